import os
import tempfile
import unittest
from datetime import datetime, timezone

import lifecycle
import storage
from lifecycle import ActionContext, BookingLifecycle


def _fields(**overrides):
    fields = {
        'name': 'Ama',
        'phone': '0551234567',
        'email': 'ama@x.com',
        'vehicle': 'sedan',
        'serviceType': 'wash',
        'pickup': 'Accra Mall',
    }
    fields.update(overrides)
    return fields


def _context(minute=0, **kwargs):
    return ActionContext(now=datetime(2026, 3, 1, 9, minute, tzinfo=timezone.utc), **kwargs)


class BookingTransitionTests(unittest.TestCase):
    """Pure transitions over an in-memory list of bookings."""

    def setUp(self):
        self.booking = lifecycle.build_booking(_fields(), _context(), default_region='GH')
        self.bookings = [self.booking]
        self.key = self.booking['id']

    def test_submitted_values_are_read_as_text(self):
        self.assertEqual(lifecycle.clean_text('  sedan '), 'sedan')
        self.assertEqual(lifecycle.clean_text(551234567), '551234567')
        self.assertEqual(lifecycle.clean_text(None), '')
        self.assertEqual(lifecycle.clean_text(True), '')
        self.assertEqual(lifecycle.clean_text(['sedan']), '')
        self.assertIsNone(lifecycle.normalize_phone_to_e164(['0551234567'], 'GH'))

        with self.assertRaises(lifecycle.ValidationError) as ctx:
            lifecycle.build_booking(_fields(pickup={'lat': 5.6}), _context())
        self.assertEqual(ctx.exception.fields, ['pickup'])

    def test_new_booking_is_pending_with_no_declines(self):
        self.assertEqual(self.booking['status'], lifecycle.STATUS_PENDING)
        self.assertEqual(self.booking['declinedProviders'], [])
        self.assertIsNone(self.booking['providerEmail'])
        self.assertEqual(self.booking['createdAt'], '2026-03-01T09:00:00Z')
        self.assertEqual(self.booking['datetime'], self.booking['createdAt'])
        self.assertTrue(self.booking['id'])

    def test_requested_datetime_is_kept_when_given(self):
        booking = lifecycle.build_booking(_fields(datetime='2026-03-05T14:30'), _context())
        self.assertEqual(booking['datetime'], '2026-03-05T14:30')
        self.assertEqual(booking['createdAt'], '2026-03-01T09:00:00Z')

    def test_ids_are_unique_even_with_identical_timestamps(self):
        other = lifecycle.build_booking(_fields(), _context())
        self.assertEqual(other['createdAt'], self.booking['createdAt'])
        self.assertNotEqual(other['id'], self.booking['id'])

    def test_fields_are_trimmed_and_context_is_stamped(self):
        context = _context(actor_email='ama@x.com', position={'latitude': 5.6, 'longitude': -0.18})
        booking = lifecycle.build_booking(_fields(name='  Ama  ', destination='  Airport '), context)

        self.assertEqual(booking['name'], 'Ama')
        self.assertEqual(booking['destination'], 'Airport')
        self.assertEqual(booking['userEmail'], 'ama@x.com')
        self.assertEqual((booking['lat'], booking['lng']), (5.6, -0.18))

    def test_phone_is_normalized_when_it_parses(self):
        self.assertEqual(self.booking['phoneE164'], '+233551234567')
        unparseable = lifecycle.build_booking(_fields(phone='call me'), _context(), default_region='GH')
        self.assertIsNone(unparseable['phoneE164'])
        self.assertEqual(unparseable['phone'], 'call me')

    def test_missing_required_field_raises_validation_error(self):
        for field in lifecycle.REQUIRED_BOOKING_FIELDS:
            with self.subTest(field=field):
                with self.assertRaises(lifecycle.ValidationError) as ctx:
                    lifecycle.build_booking(_fields(**{field: '   '}), _context())
                self.assertEqual(ctx.exception.fields, [field])

    def test_accept_then_complete(self):
        bookings, result = lifecycle.accept_booking(self.bookings, self.key, 'asa@x.com')
        self.assertTrue(result.ok)
        bookings, result = lifecycle.complete_booking(bookings, self.key, 'asa@x.com')

        self.assertTrue(result.ok)
        self.assertEqual(bookings[0]['status'], lifecycle.STATUS_COMPLETED)
        self.assertEqual(bookings[0]['providerEmail'], 'asa@x.com')

    def test_transitions_do_not_mutate_their_input(self):
        lifecycle.accept_booking(self.bookings, self.key, 'asa@x.com')
        self.assertEqual(self.bookings[0]['status'], lifecycle.STATUS_PENDING)
        self.assertIsNone(self.bookings[0]['providerEmail'])

    def test_second_accept_reassigns(self):
        bookings, _ = lifecycle.accept_booking(self.bookings, self.key, 'joe@x.com')
        bookings, result = lifecycle.accept_booking(bookings, self.key, 'asa@x.com')

        self.assertTrue(result.ok)
        self.assertEqual(bookings[0]['status'], lifecycle.STATUS_ASSIGNED)
        self.assertEqual(bookings[0]['providerEmail'], 'asa@x.com')

    def test_repeated_accept_is_harmless(self):
        bookings, _ = lifecycle.accept_booking(self.bookings, self.key, 'asa@x.com')
        again, result = lifecycle.accept_booking(bookings, self.key, 'asa@x.com')

        self.assertTrue(result.ok)
        self.assertFalse(result.changed)
        self.assertEqual(again, bookings)

    def test_decline_then_accept_clears_the_decline(self):
        bookings, _ = lifecycle.decline_booking(self.bookings, self.key, 'joe@x.com')
        self.assertEqual(bookings[0]['declinedProviders'], ['joe@x.com'])
        self.assertEqual(bookings[0]['status'], lifecycle.STATUS_PENDING)

        bookings, _ = lifecycle.accept_booking(bookings, self.key, 'joe@x.com')
        self.assertEqual(bookings[0]['declinedProviders'], [])
        self.assertEqual(bookings[0]['providerEmail'], 'joe@x.com')

    def test_decline_is_recorded_once(self):
        bookings, _ = lifecycle.decline_booking(self.bookings, self.key, 'joe@x.com')
        bookings, result = lifecycle.decline_booking(bookings, self.key, 'joe@x.com')

        self.assertTrue(result.ok)
        self.assertFalse(result.changed)
        self.assertEqual(bookings[0]['declinedProviders'], ['joe@x.com'])

    def test_complete_by_another_provider_leaves_record_unchanged(self):
        bookings, _ = lifecycle.accept_booking(self.bookings, self.key, 'asa@x.com')
        after, result = lifecycle.complete_booking(bookings, self.key, 'joe@x.com')

        self.assertFalse(result.ok)
        self.assertEqual(result.code, lifecycle.NotAssignedError.code)
        self.assertEqual(after, bookings)
        with self.assertRaises(lifecycle.NotAssignedError):
            result.raise_for_error()

    def test_complete_on_pending_booking_is_refused(self):
        _, result = lifecycle.complete_booking(self.bookings, self.key, 'asa@x.com')
        self.assertEqual(result.code, lifecycle.NotAssignedError.code)

    def test_completed_booking_cannot_be_accepted_again(self):
        bookings, _ = lifecycle.accept_booking(self.bookings, self.key, 'asa@x.com')
        bookings, _ = lifecycle.complete_booking(bookings, self.key, 'asa@x.com')
        after, result = lifecycle.accept_booking(bookings, self.key, 'joe@x.com')

        self.assertEqual(result.code, lifecycle.InvalidTransitionError.code)
        self.assertEqual(after[0]['status'], lifecycle.STATUS_COMPLETED)
        self.assertEqual(after[0]['providerEmail'], 'asa@x.com')

    def test_unknown_key_reports_not_found(self):
        for transition in (lifecycle.accept_booking, lifecycle.decline_booking, lifecycle.complete_booking):
            with self.subTest(transition=transition.__name__):
                after, result = transition(self.bookings, 'nope', 'asa@x.com')
                self.assertIs(after, self.bookings)
                self.assertEqual(result.code, lifecycle.NotFoundError.code)
                with self.assertRaises(lifecycle.NotFoundError):
                    result.raise_for_error()

    def test_legacy_booking_without_status_can_be_accepted(self):
        legacy = {'createdAt': '2025-12-01T08:00:00Z', 'name': 'Old'}
        bookings, result = lifecycle.accept_booking([legacy], '2025-12-01T08:00:00Z', 'asa@x.com')

        self.assertTrue(result.ok)
        self.assertEqual(bookings[0]['status'], lifecycle.STATUS_ASSIGNED)
        self.assertEqual(bookings[0]['declinedProviders'], [])


class DashboardTests(unittest.TestCase):
    def setUp(self):
        self.older = lifecycle.build_booking(_fields(name='Older'), _context(minute=1))
        self.newer = lifecycle.build_booking(_fields(name='Newer'), _context(minute=5))
        self.middle = lifecycle.build_booking(_fields(name='Middle'), _context(minute=3))
        self.bookings = [self.older, self.newer, self.middle]

    def test_visible_to_hides_declined_and_sorts_newest_first(self):
        bookings, _ = lifecycle.decline_booking(self.bookings, self.middle['id'], 'joe@x.com')

        visible = lifecycle.visible_to('joe@x.com', bookings)
        self.assertEqual([booking['name'] for booking in visible], ['Newer', 'Older'])
        self.assertEqual(len(lifecycle.visible_to('asa@x.com', bookings)), 3)

    def test_available_actions_follow_status_and_assignment(self):
        self.assertEqual(lifecycle.available_actions(self.older, 'asa@x.com'), ['accept', 'decline'])

        bookings, _ = lifecycle.accept_booking(self.bookings, self.older['id'], 'asa@x.com')
        assigned = bookings[0]
        self.assertEqual(lifecycle.available_actions(assigned, 'asa@x.com'), ['complete'])
        self.assertEqual(lifecycle.available_actions(assigned, 'joe@x.com'), [])

        bookings, _ = lifecycle.complete_booking(bookings, self.older['id'], 'asa@x.com')
        self.assertEqual(lifecycle.available_actions(bookings[0], 'asa@x.com'), [])

    def test_provider_stats_split_assignments(self):
        bookings, _ = lifecycle.accept_booking(self.bookings, self.older['id'], 'asa@x.com')
        bookings, _ = lifecycle.accept_booking(bookings, self.newer['id'], 'joe@x.com')

        self.assertEqual(lifecycle.provider_stats(bookings, 'asa@x.com'), {
            'total': 3,
            'pending': 1,
            'assigned_to_you': 1,
            'assigned_to_others': 1,
            'completed': 0,
        })

    def test_customer_stats_and_recent(self):
        bookings, _ = lifecycle.accept_booking(self.bookings, self.older['id'], 'asa@x.com')
        bookings, _ = lifecycle.complete_booking(bookings, self.older['id'], 'asa@x.com')

        self.assertEqual(lifecycle.customer_stats(bookings), {
            'total': 3, 'pending': 2, 'assigned': 0, 'completed': 1,
        })
        self.assertEqual([booking['name'] for booking in lifecycle.recent(bookings, limit=2)], ['Newer', 'Middle'])

    def test_customer_positions_follow_the_customer(self):
        mine = dict(self.older, userEmail='ama@x.com')
        theirs = dict(self.newer, userEmail='kofi@x.com')

        bookings, changed = lifecycle.update_customer_positions([mine, theirs], 'ama@x.com', 5.55, -0.2)

        self.assertTrue(changed)
        self.assertEqual((bookings[0]['lat'], bookings[0]['lng']), (5.55, -0.2))
        self.assertIsNone(bookings[1]['lat'])


class BookingLifecycleStoreTests(unittest.TestCase):
    """Read-modify-write cycles against the SQLite-backed store."""

    def setUp(self):
        self._db_file = tempfile.NamedTemporaryFile(delete=False, suffix='.db')
        self._db_file.close()
        storage.DATABASE = self._db_file.name
        storage.init_store()
        self.controller = BookingLifecycle(default_region='GH')

    def tearDown(self):
        if os.path.exists(self._db_file.name):
            os.remove(self._db_file.name)

    def test_booking_scenario_from_request_to_completion(self):
        booking = self.controller.create(_fields(), ActionContext())
        key = booking['id']
        stored = self.controller.list_all()
        self.assertEqual(len(stored), 1)
        self.assertEqual(stored[0]['status'], 'pending')

        self.assertTrue(self.controller.decline(key, 'joe@x.com').ok)
        after_decline = self.controller.find(key)
        self.assertEqual(after_decline['declinedProviders'], ['joe@x.com'])
        self.assertEqual(after_decline['status'], 'pending')

        self.assertTrue(self.controller.accept(key, 'asa@x.com').ok)
        after_accept = self.controller.find(key)
        self.assertEqual(after_accept['status'], 'assigned')
        self.assertEqual(after_accept['providerEmail'], 'asa@x.com')

        self.assertTrue(self.controller.complete(key, 'asa@x.com').ok)
        self.assertEqual(self.controller.find(key)['status'], 'completed')

    def test_invalid_creation_writes_nothing(self):
        with self.assertRaises(lifecycle.ValidationError):
            self.controller.create(_fields(pickup=''), ActionContext())
        self.assertEqual(self.controller.list_all(), [])
        self.assertEqual(self.controller.store.snapshot()[1], 0)

    def test_failed_transition_does_not_write(self):
        booking = self.controller.create(_fields(), ActionContext())
        self.controller.accept(booking['id'], 'asa@x.com')
        revision = self.controller.store.snapshot()[1]

        result = self.controller.complete(booking['id'], 'joe@x.com')

        self.assertFalse(result.ok)
        self.assertEqual(self.controller.store.snapshot()[1], revision)
        self.assertEqual(self.controller.find(booking['id'])['status'], 'assigned')

    def test_concurrent_writer_causes_conflict(self):
        booking = self.controller.create(_fields(), ActionContext())
        store = self.controller.store

        original_snapshot = store.snapshot

        def stale_snapshot():
            bookings, revision = original_snapshot()
            # Another tab writes between our read and our write.
            store.save(bookings)
            return bookings, revision

        store.snapshot = stale_snapshot
        with self.assertRaises(storage.ConflictError):
            self.controller.accept(booking['id'], 'asa@x.com')
        store.snapshot = original_snapshot

        self.assertEqual(self.controller.find(booking['id'])['status'], 'pending')

    def test_delete_and_customer_history(self):
        mine = self.controller.create(_fields(), ActionContext(actor_email='ama@x.com'))
        self.controller.create(_fields(name='Kofi'), ActionContext(actor_email='kofi@x.com'))

        self.assertEqual([booking['id'] for booking in self.controller.for_customer('ama@x.com')], [mine['id']])
        self.assertTrue(self.controller.move_customer('ama@x.com', 5.6, -0.19))
        self.assertEqual(self.controller.find(mine['id'])['lat'], 5.6)

        self.assertTrue(self.controller.delete(mine['id']))
        self.assertFalse(self.controller.delete(mine['id']))
        self.assertEqual(len(self.controller.list_all()), 1)


if __name__ == '__main__':
    unittest.main()
