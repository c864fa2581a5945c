from functools import wraps
import logging
import os

from flask import Flask, request, jsonify, session, g
from flask_cors import CORS
from datetime import datetime

import accounts
import messaging
import storage
from accounts import ROLE_ADMIN, ROLE_CUSTOMER, ROLE_PROVIDER, DuplicateAccountError
from lifecycle import (
    BOOKING_STATUSES,
    ActionContext,
    BookingLifecycle,
    InvalidTransitionError,
    NotAssignedError,
    NotFoundError,
    ValidationError,
    available_actions,
    customer_stats,
    provider_stats,
    recent,
    visible_to,
)
from storage import ConflictError

app = Flask(__name__)
CORS(app)  # Enable CORS for the browser front end
app.secret_key = os.environ.get('SECRET_KEY', 'dev-only-secret-change-me')
app.config.update(
    SESSION_COOKIE_HTTPONLY=True,
    SESSION_COOKIE_SAMESITE='Lax',
    SESSION_COOKIE_SECURE=os.environ.get('SESSION_COOKIE_SECURE', 'false').lower() == 'true',
    SESSION_TIMEOUT_MINUTES=int(os.environ.get('SESSION_TIMEOUT_MINUTES', '30')),
    DEFAULT_COUNTRY=os.environ.get('DEFAULT_COUNTRY', 'GH').strip().upper(),
    ADMIN_EMAIL=os.environ.get('ADMIN_EMAIL', 'admin@ridehub.local').strip().lower(),
    ADMIN_PASSWORD=os.environ.get('ADMIN_PASSWORD', 'Admin123!'),
)

LOG_LEVEL = os.environ.get('LOG_LEVEL', 'INFO').strip().upper()
PUBLIC_ENDPOINTS = {'signup', 'login', 'logout', 'health_check', 'api_docs', 'static'}

STATUS_BY_ERROR_CODE = {
    NotFoundError.code: 404,
    NotAssignedError.code: 403,
    InvalidTransitionError.code: 400,
}


def get_lifecycle():
    return BookingLifecycle(default_region=app.config['DEFAULT_COUNTRY'])


def login_required(func):
    @wraps(func)
    def wrapper(*args, **kwargs):
        if not session.get('email'):
            return jsonify({'success': False, 'error': 'Authentication required'}), 401
        return func(*args, **kwargs)
    return wrapper


def roles_required(*allowed_roles):
    def decorator(func):
        @wraps(func)
        def wrapper(*args, **kwargs):
            if not session.get('email'):
                return jsonify({'success': False, 'error': 'Authentication required'}), 401

            if session.get('role') not in allowed_roles:
                return jsonify({'success': False, 'error': 'Forbidden'}), 403

            return func(*args, **kwargs)

        return wrapper

    return decorator


def _current_timestamp():
    return datetime.now().timestamp()


def _is_inactivity_timeout(last_activity_ts, current_ts=None, timeout_seconds=None):
    if last_activity_ts is None:
        return False

    now_ts = current_ts if current_ts is not None else _current_timestamp()
    timeout_window = timeout_seconds if timeout_seconds is not None else app.config['SESSION_TIMEOUT_MINUTES'] * 60
    return (now_ts - float(last_activity_ts)) > timeout_window


def _no_cache(response):
    response.headers['Cache-Control'] = 'no-store, no-cache, must-revalidate, max-age=0'
    response.headers['Pragma'] = 'no-cache'
    response.headers['Expires'] = '0'
    return response


def _session_expired_response():
    session.clear()
    response = jsonify({'success': False, 'error': 'Your session has expired due to inactivity. Please log in again.'})
    response.status_code = 401
    return _no_cache(response)


@app.before_request
def enforce_session_timeout():
    if request.endpoint in PUBLIC_ENDPOINTS:
        return None

    if not session.get('email'):
        return None

    if _is_inactivity_timeout(session.get('last_activity_at')):
        return _session_expired_response()

    session['last_activity_at'] = _current_timestamp()
    g.disable_authenticated_cache = True
    return None


@app.after_request
def apply_no_cache_headers(response):
    if getattr(g, 'disable_authenticated_cache', False):
        _no_cache(response)
    return response


@app.errorhandler(ConflictError)
def handle_conflict(exc):
    return jsonify({'success': False, 'errorCode': exc.code, 'error': exc.message}), 409


def init_db():
    """Initialize the store and seed the admin account"""
    storage.init_store()
    accounts.ensure_default_admin(app.config['ADMIN_EMAIL'], app.config['ADMIN_PASSWORD'])
    app.logger.info('Store initialized at %s', storage.DATABASE)


def _payload():
    payload = request.get_json(silent=True)
    if not isinstance(payload, dict):
        payload = None
    return payload or request.form.to_dict() or {}


def _to_coordinate(value):
    if value is None or value == '':
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _position_from(payload):
    latitude = _to_coordinate(payload.get('latitude', payload.get('lat')))
    longitude = _to_coordinate(payload.get('longitude', payload.get('lng')))
    if latitude is None or longitude is None:
        return None
    return {'latitude': latitude, 'longitude': longitude}


def _action_context(payload=None):
    return ActionContext(
        actor_email=session.get('email'),
        role=session.get('role'),
        position=_position_from(payload or {}),
    )


def _validation_error_response(exc):
    return jsonify({'success': False, 'errorCode': exc.code, 'error': exc.message, 'fields': exc.fields}), 400


def _start_session(user):
    session.clear()
    session.update(accounts.session_user(user))
    session['last_activity_at'] = _current_timestamp()


# ============================================
# AUTH ENDPOINTS
# ============================================

@app.route('/auth/signup', methods=['POST'])
def signup():
    try:
        user = accounts.sign_up(_payload())
    except ValidationError as exc:
        return _validation_error_response(exc)
    except DuplicateAccountError as exc:
        return jsonify({'success': False, 'errorCode': exc.code, 'error': exc.message}), 409

    _start_session(user)
    return jsonify({
        'success': True,
        'message': 'Account created successfully!',
        'user': accounts.public_user(user),
    }), 201


@app.route('/auth/login', methods=['POST'])
def login():
    payload = _payload()
    user = accounts.authenticate(payload.get('email'), payload.get('password'))

    selected_role = accounts.normalize_role(payload.get('role'))
    if not user or (selected_role and user['role'] != selected_role):
        return jsonify({'success': False, 'error': 'Invalid email or password.'}), 401

    _start_session(user)
    return jsonify({'success': True, 'message': 'Login successful!', 'user': accounts.session_user(user)})


@app.route('/logout', methods=['GET'])
def logout():
    session.clear()
    return jsonify({'success': True, 'message': 'You have been logged out successfully.'})


@app.route('/api/me', methods=['GET'])
@login_required
def current_user():
    user = accounts.find_user(session['email'])
    if not user:
        session.clear()
        return jsonify({'success': False, 'error': 'User not found'}), 404
    return jsonify({'success': True, 'user': accounts.public_user(user)})


@app.route('/api/me/location', methods=['PUT'])
@login_required
def update_my_location():
    position = _position_from(_payload())
    if not position:
        return jsonify({'success': False, 'error': 'latitude and longitude are required'}), 400

    user = accounts.update_location(session['email'], position['latitude'], position['longitude'])
    if not user:
        return jsonify({'success': False, 'error': 'User not found'}), 404

    bookings_updated = False
    if user['role'] == ROLE_CUSTOMER:
        bookings_updated = get_lifecycle().move_customer(user['email'], position['latitude'], position['longitude'])

    return jsonify({'success': True, 'position': position, 'bookings_updated': bookings_updated})


# ============================================
# BOOKING ENDPOINTS
# ============================================

@app.route('/api/bookings', methods=['POST'])
def create_booking():
    """Create a new booking request"""
    payload = _payload()
    try:
        booking = get_lifecycle().create(payload, _action_context(payload))
    except ValidationError as exc:
        return _validation_error_response(exc)

    return jsonify({
        'success': True,
        'message': 'Your request has been submitted successfully! We will contact you shortly.',
        'booking': booking,
    }), 201


@app.route('/api/bookings', methods=['GET'])
@roles_required(ROLE_ADMIN)
def get_bookings():
    """Get all bookings, optionally filtered by status"""
    status = request.args.get('status')
    if status and status not in BOOKING_STATUSES:
        return jsonify({'success': False, 'error': 'Invalid status'}), 400

    bookings = get_lifecycle().list_all()
    if status:
        bookings = [booking for booking in bookings if booking.get('status') == status]

    return jsonify({
        'success': True,
        'bookings': bookings,
        'count': len(bookings)
    })


@app.route('/api/bookings/<booking_key>', methods=['GET'])
@roles_required(ROLE_ADMIN)
def get_booking(booking_key):
    booking = get_lifecycle().find(booking_key)
    if not booking:
        return jsonify({'success': False, 'error': 'Booking not found'}), 404
    return jsonify({'success': True, 'booking': booking})


@app.route('/api/bookings/<booking_key>', methods=['DELETE'])
@roles_required(ROLE_ADMIN)
def delete_booking(booking_key):
    """Delete a booking permanently"""
    if not get_lifecycle().delete(booking_key):
        return jsonify({'success': False, 'error': 'Booking not found'}), 404
    return jsonify({'success': True, 'message': 'Booking deleted successfully'})


# ============================================
# DASHBOARD ENDPOINTS
# ============================================

def _provider_summary(provider_email):
    provider = accounts.find_user(provider_email)
    if not provider:
        return None
    return {
        'name': provider.get('name'),
        'email': provider.get('email'),
        'carType': provider.get('carType'),
        'lat': provider.get('lat'),
        'lng': provider.get('lng'),
    }


@app.route('/api/customer/dashboard', methods=['GET'])
@roles_required(ROLE_CUSTOMER)
def customer_dashboard():
    bookings = get_lifecycle().for_customer(session['email'])

    providers = {}
    for booking in bookings:
        email = booking.get('providerEmail')
        if email and email not in providers:
            providers[email] = _provider_summary(email)

    listed = [dict(booking, provider=providers.get(booking.get('providerEmail'))) for booking in bookings]
    return jsonify({
        'success': True,
        'user_name': session.get('name'),
        'stats': customer_stats(bookings),
        'recent': recent(listed),
        'bookings': listed,
    })


@app.route('/api/provider/dashboard', methods=['GET'])
@roles_required(ROLE_PROVIDER)
def provider_dashboard():
    provider_email = session['email']
    bookings = get_lifecycle().list_all()

    names = {}
    requests = []
    for booking in visible_to(provider_email, bookings):
        assigned_email = booking.get('providerEmail')
        if assigned_email and assigned_email not in names:
            assigned_user = accounts.find_user(assigned_email)
            names[assigned_email] = assigned_user['name'] if assigned_user else 'another provider'
        requests.append(dict(
            booking,
            actions=available_actions(booking, provider_email),
            assignedToYou=bool(assigned_email) and assigned_email == provider_email,
            assignedProviderName=names.get(assigned_email),
        ))

    return jsonify({
        'success': True,
        'user_name': session.get('name'),
        'stats': provider_stats(bookings, provider_email),
        'recent': recent(bookings),
        'requests': requests,
    })


def _transition_response(result, success_message):
    if not result.ok:
        return jsonify({
            'success': False,
            'errorCode': result.code,
            'error': result.message,
        }), STATUS_BY_ERROR_CODE.get(result.code, 400)
    return jsonify({'success': True, 'message': success_message, 'booking': result.booking})


@app.route('/api/provider/requests/<booking_key>/accept', methods=['POST'])
@roles_required(ROLE_PROVIDER)
def accept_request(booking_key):
    result = get_lifecycle().accept(booking_key, session['email'])
    return _transition_response(result, 'Request accepted')


@app.route('/api/provider/requests/<booking_key>/decline', methods=['POST'])
@roles_required(ROLE_PROVIDER)
def decline_request(booking_key):
    result = get_lifecycle().decline(booking_key, session['email'])
    return _transition_response(result, 'Request declined')


@app.route('/api/provider/requests/<booking_key>/complete', methods=['POST'])
@roles_required(ROLE_PROVIDER)
def complete_request(booking_key):
    result = get_lifecycle().complete(booking_key, session['email'])
    return _transition_response(result, 'Request marked as completed')


# ============================================
# MESSAGE ENDPOINTS
# ============================================

@app.route('/api/messages', methods=['POST'])
def submit_message():
    try:
        contact = messaging.submit_contact(_payload())
    except ValidationError as exc:
        return _validation_error_response(exc)
    return jsonify({
        'success': True,
        'message': 'Thank you! Your message has been received.',
        'contact': contact,
    }), 201


@app.route('/api/messages', methods=['GET'])
@roles_required(ROLE_ADMIN)
def get_messages():
    contacts = messaging.list_contacts()
    return jsonify({'success': True, 'messages': contacts, 'count': len(contacts)})


@app.route('/api/messages/<int:index>', methods=['DELETE'])
@roles_required(ROLE_ADMIN)
def delete_message(index):
    if messaging.delete_contact(index) is None:
        return jsonify({'success': False, 'error': 'Message not found'}), 404
    return jsonify({'success': True, 'message': 'Message deleted successfully'})


@app.route('/api/chat', methods=['GET'])
def get_chat():
    return jsonify({'success': True, 'messages': messaging.list_chat(), 'me': session.get('email')})


@app.route('/api/chat', methods=['POST'])
def post_chat():
    try:
        entry = messaging.post_chat(_payload().get('text'), sender=session.get('email'))
    except ValidationError as exc:
        return _validation_error_response(exc)
    return jsonify({'success': True, 'entry': entry}), 201


# ============================================
# ADMIN ENDPOINTS
# ============================================

@app.route('/api/admin/users', methods=['GET'])
@roles_required(ROLE_ADMIN)
def admin_list_users():
    users = accounts.list_users()
    return jsonify({'success': True, 'users': users, 'count': len(users)})


# ============================================
# HELPER ENDPOINTS
# ============================================

@app.route('/api/health', methods=['GET'])
def health_check():
    """Health check endpoint"""
    return jsonify({
        'success': True,
        'message': 'API is running',
        'timestamp': datetime.now().isoformat()
    })


@app.route('/api/docs', methods=['GET'])
def api_docs():
    """API documentation"""
    return jsonify({
        'message': 'Ride Service Marketplace API',
        'version': '1.0',
        'endpoints': {
            'POST /auth/signup': 'Create a customer or provider account',
            'POST /auth/login': 'Log in with email and password',
            'GET /logout': 'Log out',
            'GET /api/me': 'Current user',
            'PUT /api/me/location': 'Update current position (latitude, longitude)',
            'POST /api/bookings': 'Submit a booking request',
            'GET /api/bookings': 'All bookings, admin only (optional: ?status=pending)',
            'GET /api/bookings/:id': 'One booking, admin only',
            'DELETE /api/bookings/:id': 'Delete booking, admin only',
            'GET /api/customer/dashboard': 'Customer bookings and stats',
            'GET /api/provider/dashboard': 'Requests offered to the provider and stats',
            'POST /api/provider/requests/:id/accept': 'Accept a request',
            'POST /api/provider/requests/:id/decline': 'Decline a request',
            'POST /api/provider/requests/:id/complete': 'Mark an assigned request completed',
            'POST /api/messages': 'Contact form',
            'GET /api/messages': 'Contact messages, admin only',
            'DELETE /api/messages/:index': 'Delete contact message, admin only',
            'GET /api/chat': 'Chat log',
            'POST /api/chat': 'Post to the chat',
            'GET /api/admin/users': 'Registered users, admin only',
            'GET /api/health': 'Health check'
        }
    })


if __name__ == '__main__':
    logging.basicConfig(level=LOG_LEVEL)
    init_db()

    print("\n" + "="*50)
    print(" Ride Service Marketplace API Server")
    print("="*50)
    print("Server running on: http://localhost:5000")
    print("API Documentation: http://localhost:5000/api/docs")
    print("="*50 + "\n")

    app.run(debug=True, host='0.0.0.0', port=5000)
