import copy
import logging
import uuid
from datetime import datetime, timezone

import phonenumbers

from storage import BookingStore

logger = logging.getLogger(__name__)

STATUS_PENDING = 'pending'
STATUS_ASSIGNED = 'assigned'
STATUS_COMPLETED = 'completed'
BOOKING_STATUSES = (STATUS_PENDING, STATUS_ASSIGNED, STATUS_COMPLETED)

REQUIRED_BOOKING_FIELDS = ('name', 'phone', 'email', 'vehicle', 'serviceType', 'pickup')
OPTIONAL_BOOKING_FIELDS = ('destination', 'datetime', 'notes')

ACTION_ACCEPT = 'accept'
ACTION_DECLINE = 'decline'
ACTION_COMPLETE = 'complete'

RECENT_LIMIT = 3


class LifecycleError(Exception):
    code = 'LIFECYCLE_ERROR'

    def __init__(self, message):
        super().__init__(message)
        self.message = message


class ValidationError(LifecycleError):
    code = 'VALIDATION_ERROR'

    def __init__(self, message, fields=None):
        super().__init__(message)
        self.fields = list(fields or [])


class NotFoundError(LifecycleError):
    code = 'BOOKING_NOT_FOUND'


class NotAssignedError(LifecycleError):
    code = 'NOT_ASSIGNED'


class InvalidTransitionError(LifecycleError):
    code = 'INVALID_TRANSITION'


_ERRORS_BY_CODE = {
    error.code: error for error in (NotFoundError, NotAssignedError, InvalidTransitionError)
}


class ActionContext:
    """Who is acting, where they are, and when."""

    def __init__(self, actor_email=None, role=None, position=None, now=None):
        self.actor_email = actor_email
        self.role = role
        self.position = position
        self.now = now

    def timestamp(self):
        moment = self.now or datetime.now(timezone.utc)
        return moment.isoformat().replace('+00:00', 'Z')


class TransitionResult:
    def __init__(self, ok, booking=None, code=None, message=None, changed=False):
        self.ok = ok
        self.booking = booking
        self.code = code
        self.message = message
        self.changed = changed

    @classmethod
    def success(cls, booking, changed=True):
        return cls(True, booking=booking, changed=changed)

    @classmethod
    def failure(cls, code, message, booking=None):
        return cls(False, booking=booking, code=code, message=message)

    def raise_for_error(self):
        if self.ok:
            return self
        raise _ERRORS_BY_CODE.get(self.code, LifecycleError)(self.message)


def is_valid_booking_status_transition(current_status, next_status):
    allowed_transitions = {
        STATUS_PENDING: {STATUS_ASSIGNED},
        STATUS_ASSIGNED: {STATUS_ASSIGNED, STATUS_COMPLETED},
        STATUS_COMPLETED: set(),
    }
    return next_status in allowed_transitions.get(current_status, set())


def clean_text(value):
    """Trimmed text for a submitted field. Numbers become text, other values read as blank."""
    if isinstance(value, str):
        return value.strip()
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(value)
    return ''


def normalize_phone_to_e164(phone, default_region):
    """Best-effort E.164 form of a phone number, or None when it does not parse."""
    raw_phone = clean_text(phone)
    if not raw_phone:
        return None
    try:
        parsed = phonenumbers.parse(raw_phone, default_region or None)
    except phonenumbers.NumberParseException:
        return None
    if not phonenumbers.is_valid_number(parsed):
        return None
    return phonenumbers.format_number(parsed, phonenumbers.PhoneNumberFormat.E164)


def build_booking(fields, context, default_region=None):
    """Validate submitted fields and return a new pending booking record."""
    data = {name: clean_text(fields.get(name)) for name in REQUIRED_BOOKING_FIELDS + OPTIONAL_BOOKING_FIELDS}

    missing = [name for name in REQUIRED_BOOKING_FIELDS if not data[name]]
    if missing:
        raise ValidationError('Please fill in all required fields.', fields=missing)

    created_at = context.timestamp()
    position = context.position or {}

    return {
        'id': uuid.uuid4().hex,
        'name': data['name'],
        'phone': data['phone'],
        'phoneE164': normalize_phone_to_e164(data['phone'], default_region),
        'email': data['email'],
        'vehicle': data['vehicle'],
        'serviceType': data['serviceType'],
        'pickup': data['pickup'],
        'destination': data['destination'] or '',
        'datetime': data['datetime'] or created_at,
        'notes': data['notes'] or '',
        'createdAt': created_at,
        'lat': position.get('latitude'),
        'lng': position.get('longitude'),
        'userEmail': context.actor_email,
        'status': STATUS_PENDING,
        'providerEmail': None,
        'declinedProviders': [],
    }


def _locate(bookings, key):
    for index, booking in enumerate(bookings):
        if BookingStore.matches(booking, key):
            return index
    return None


def _not_found(key):
    return TransitionResult.failure(NotFoundError.code, f'Booking {key} not found')


def accept_booking(bookings, key, provider_email):
    """Assign the booking to provider_email. Returns (new_bookings, result)."""
    index = _locate(bookings, key)
    if index is None:
        return bookings, _not_found(key)

    booking = bookings[index]
    current_status = booking.get('status') or STATUS_PENDING
    if not is_valid_booking_status_transition(current_status, STATUS_ASSIGNED):
        return bookings, TransitionResult.failure(
            InvalidTransitionError.code,
            f'A {current_status} booking cannot be accepted.',
            booking=booking,
        )

    updated = copy.deepcopy(booking)
    updated['providerEmail'] = provider_email
    updated['status'] = STATUS_ASSIGNED
    updated['declinedProviders'] = [
        email for email in (updated.get('declinedProviders') or []) if email != provider_email
    ]

    new_bookings = list(bookings)
    new_bookings[index] = updated
    return new_bookings, TransitionResult.success(updated, changed=updated != booking)


def decline_booking(bookings, key, provider_email):
    index = _locate(bookings, key)
    if index is None:
        return bookings, _not_found(key)

    booking = bookings[index]
    declined = list(booking.get('declinedProviders') or [])
    if provider_email in declined:
        return bookings, TransitionResult.success(booking, changed=False)

    updated = copy.deepcopy(booking)
    updated['declinedProviders'] = declined + [provider_email]

    new_bookings = list(bookings)
    new_bookings[index] = updated
    return new_bookings, TransitionResult.success(updated)


def complete_booking(bookings, key, provider_email):
    index = _locate(bookings, key)
    if index is None:
        return bookings, _not_found(key)

    booking = bookings[index]
    if not booking.get('providerEmail') or booking.get('providerEmail') != provider_email:
        return bookings, TransitionResult.failure(
            NotAssignedError.code,
            'Only the assigned provider can complete this booking.',
            booking=booking,
        )
    if booking.get('status') == STATUS_COMPLETED:
        return bookings, TransitionResult.success(booking, changed=False)

    updated = copy.deepcopy(booking)
    updated['status'] = STATUS_COMPLETED

    new_bookings = list(bookings)
    new_bookings[index] = updated
    return new_bookings, TransitionResult.success(updated)


def update_customer_positions(bookings, user_email, latitude, longitude):
    """Copy a customer's latest position onto every booking they own."""
    new_bookings = []
    changed = False
    for booking in bookings:
        if user_email and booking.get('userEmail') == user_email:
            booking = dict(booking, lat=latitude, lng=longitude)
            changed = True
        new_bookings.append(booking)
    return new_bookings, changed


def sort_newest_first(bookings):
    return sorted(bookings, key=lambda booking: booking.get('createdAt') or '', reverse=True)


def visible_to(provider_email, bookings):
    """Bookings the provider has not declined, newest first."""
    return sort_newest_first(
        booking for booking in bookings
        if provider_email not in (booking.get('declinedProviders') or [])
    )


def recent(bookings, limit=RECENT_LIMIT):
    return sort_newest_first(bookings)[:limit]


def available_actions(booking, provider_email):
    status = booking.get('status') or STATUS_PENDING
    if status == STATUS_PENDING:
        return [ACTION_ACCEPT, ACTION_DECLINE]
    if status == STATUS_ASSIGNED and booking.get('providerEmail') == provider_email:
        return [ACTION_COMPLETE]
    return []


def _count(bookings, status):
    return sum(1 for booking in bookings if booking.get('status') == status)


def customer_stats(bookings):
    return {
        'total': len(bookings),
        'pending': _count(bookings, STATUS_PENDING),
        'assigned': _count(bookings, STATUS_ASSIGNED),
        'completed': _count(bookings, STATUS_COMPLETED),
    }


def provider_stats(bookings, provider_email):
    assigned = [booking for booking in bookings if booking.get('status') == STATUS_ASSIGNED]
    return {
        'total': len(bookings),
        'pending': _count(bookings, STATUS_PENDING),
        'assigned_to_you': sum(1 for booking in assigned if booking.get('providerEmail') == provider_email),
        'assigned_to_others': sum(
            1 for booking in assigned
            if booking.get('providerEmail') and booking.get('providerEmail') != provider_email
        ),
        'completed': _count(bookings, STATUS_COMPLETED),
    }


class BookingLifecycle:
    """Runs lifecycle transitions as read-modify-write cycles on a BookingStore.

    Each cycle writes back with the revision it read, so a concurrent
    writer makes the later save fail with storage.ConflictError instead of
    silently overwriting.
    """

    def __init__(self, store=None, default_region=None):
        self.store = store or BookingStore()
        self.default_region = default_region

    def create(self, fields, context):
        booking = build_booking(fields, context, default_region=self.default_region)
        self.store.append(booking)
        logger.info('Booking %s created for %s', booking['id'], booking['email'])
        return booking

    def _apply(self, transition, key, provider_email, action):
        bookings, revision = self.store.snapshot()
        new_bookings, result = transition(bookings, key, provider_email)
        if not result.ok:
            logger.warning('%s of booking %s by %s rejected: %s', action, key, provider_email, result.code)
            return result
        if result.changed:
            self.store.save(new_bookings, revision=revision)
            logger.info('Booking %s %s by %s', key, action, provider_email)
        return result

    def accept(self, key, provider_email):
        return self._apply(accept_booking, key, provider_email, 'accepted')

    def decline(self, key, provider_email):
        return self._apply(decline_booking, key, provider_email, 'declined')

    def complete(self, key, provider_email):
        return self._apply(complete_booking, key, provider_email, 'completed')

    def delete(self, key):
        deleted = self.store.delete(key)
        if deleted:
            logger.info('Booking %s deleted', key)
        return deleted

    def find(self, key):
        return self.store.find_by_key(key)

    def list_all(self):
        return self.store.load()

    def for_customer(self, user_email):
        return [booking for booking in self.store.load() if booking.get('userEmail') == user_email]

    def move_customer(self, user_email, latitude, longitude):
        bookings, revision = self.store.snapshot()
        new_bookings, changed = update_customer_positions(bookings, user_email, latitude, longitude)
        if changed:
            self.store.save(new_bookings, revision=revision)
        return changed
