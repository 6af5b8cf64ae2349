import threading
import time
from datetime import timedelta
from unittest import mock

from django.db import DatabaseError, OperationalError, connection
from django.test import TestCase, TransactionTestCase
from django.utils import timezone

from towing import lifecycle, matching
from towing.models import Provider, Request

from .utils import make_provider, make_request

Status = Request.Status


class ClaimTests(TestCase):
    def setUp(self):
        self.first = make_provider("Reboques Silva")
        self.second = make_provider("Guincho Souza")

    def test_only_one_provider_wins_the_claim(self):
        request = make_request()

        won = matching.claim(request.pk, self.first.pk)
        lost = matching.claim(request.pk, self.second.pk)

        self.assertTrue(won.applied)
        self.assertFalse(lost.applied)
        self.assertEqual(lost.request.provider_id, self.first.pk)
        self.assertEqual(lost.status, Status.IN_PROGRESS)

    def test_accept_race_on_open_request(self):
        request = make_request()

        results = [matching.accept(request.pk, provider.pk) for provider in (self.first, self.second)]

        self.assertEqual([result.applied for result in results], [True, False])
        request.refresh_from_db()
        self.assertEqual(request.provider_id, self.first.pk)
        self.assertEqual(request.status, Status.IN_PROGRESS)

    def test_accept_unknown_request(self):
        with self.assertRaises(lifecycle.RequestNotFound):
            matching.accept(999999, self.first.pk)

    def test_cancelled_request_cannot_be_claimed(self):
        request = make_request(status=Status.CANCELLED)
        self.assertFalse(matching.accept(request.pk, self.first.pk).applied)


class DirectedDispatchTests(TestCase):
    def setUp(self):
        self.provider = make_provider("Reboques Silva")
        self.other = make_provider("Guincho Souza")

    def test_assign_then_accept(self):
        request = make_request()

        assigned = matching.assign(request.pk, self.provider.pk)
        self.assertTrue(assigned.applied)
        self.assertEqual(assigned.status, Status.DIRECTED)

        # Someone else cannot take a directed request.
        self.assertFalse(matching.accept(request.pk, self.other.pk).applied)

        accepted = matching.accept(request.pk, self.provider.pk)
        self.assertTrue(accepted.applied)
        self.assertEqual(accepted.request.provider_id, self.provider.pk)

    def test_assign_requires_unassigned_pending_request(self):
        request = make_request(status=Status.IN_PROGRESS, provider=self.other)
        self.assertFalse(matching.assign(request.pk, self.provider.pk).applied)

    def test_assign_unknown_provider(self):
        request = make_request()
        with self.assertRaises(Provider.DoesNotExist):
            matching.assign(request.pk, 999999)

    def test_decline_returns_request_to_pool(self):
        request = make_request()
        matching.assign(request.pk, self.provider.pk)

        result = matching.decline(request.pk, self.provider.pk)

        self.assertTrue(result.applied)
        self.assertEqual(result.status, Status.PENDING)
        self.assertIsNone(result.request.provider_id)

    def test_decline_by_another_provider_changes_nothing(self):
        request = make_request()
        matching.assign(request.pk, self.provider.pk)

        self.assertFalse(matching.decline(request.pk, self.other.pk).applied)
        request.refresh_from_db()
        self.assertEqual(request.provider_id, self.provider.pk)

    def test_declining_pool_request_writes_nothing(self):
        request = make_request()
        before = Request.objects.get(pk=request.pk).updated_at

        result = matching.decline(request.pk, self.provider.pk)

        self.assertFalse(result.applied)
        self.assertEqual(Request.objects.get(pk=request.pk).updated_at, before)


class PoolDiscoveryTests(TestCase):
    def test_offline_provider_gets_nothing(self):
        make_request()
        provider = make_provider(status="offline")
        self.assertIsNone(matching.find_open(provider))

    def test_provider_without_position_gets_nothing(self):
        make_request()
        provider = make_provider(latitude=None, longitude=None)
        self.assertIsNone(matching.find_open(provider))

    def test_nearest_request_first(self):
        provider = make_provider(latitude=-23.55, longitude=-46.63)
        far = make_request(origin_lat=-22.90, origin_lng=-43.17)
        near = make_request(origin_lat=-23.56, origin_lng=-46.64)

        self.assertEqual(matching.find_open(provider), near)
        self.assertEqual(matching.find_open(provider, exclude=[near.pk]), far)

    def test_stale_and_assigned_requests_are_hidden(self):
        provider = make_provider()
        stale = make_request()
        Request.objects.filter(pk=stale.pk).update(created_at=timezone.now() - timedelta(hours=30))
        make_request(status=Status.DIRECTED, provider=make_provider("Guincho Souza"))

        self.assertIsNone(matching.find_open(provider))


class DispatchMonitorTests(TestCase):
    def setUp(self):
        self.provider = make_provider()
        self.offers = []
        self.monitor = matching.DispatchMonitor(self.provider.pk, self.offers.append, poll_interval=1)

    def test_directed_offer_is_routed_once(self):
        request = make_request()
        matching.assign(request.pk, self.provider.pk)

        first = self.monitor.reconcile()
        second = self.monitor.reconcile()

        self.assertEqual(first, matching.Offer("directed", request.pk, Status.DIRECTED))
        self.assertIsNone(second)
        self.assertEqual(len(self.offers), 1)

    def test_status_change_routes_again(self):
        request = make_request()
        matching.assign(request.pk, self.provider.pk)
        self.monitor.reconcile()

        matching.accept(request.pk, self.provider.pk)
        offer = self.monitor.reconcile()

        self.assertEqual(offer.kind, "active")
        self.assertEqual(offer.status, Status.IN_PROGRESS)

    def test_active_request_wins_over_pool(self):
        active = make_request(status=Status.ON_SITE, provider=self.provider)
        make_request()

        self.assertEqual(self.monitor.reconcile().request_id, active.pk)

    def test_declined_pool_offer_is_dismissed(self):
        first = make_request(origin_lat=-23.5501, origin_lng=-46.6301)
        second = make_request(origin_lat=-23.60, origin_lng=-46.70)

        self.assertEqual(self.monitor.reconcile().request_id, first.pk)
        self.monitor.resolve(first.pk, declined=True)

        self.assertEqual(self.monitor.reconcile().request_id, second.pk)

    def test_resolve_allows_rerouting_same_offer(self):
        request = make_request()
        self.monitor.reconcile()
        self.monitor.resolve(request.pk)

        self.assertEqual(self.monitor.reconcile().request_id, request.pk)

    def test_change_feed_triggers_reconcile(self):
        with mock.patch("towing.matching.threading.Thread") as thread_class:
            self.monitor.start()
            self.addCleanup(self.monitor.stop)
            thread_class.return_value.start.assert_called_once_with()

            request = make_request(provider=None)
            matching.assign(request.pk, self.provider.pk)

            self.assertEqual(self.offers, [matching.Offer("directed", request.pk, Status.DIRECTED)])

            self.monitor.stop()
            matching.accept(request.pk, self.provider.pk)
            self.assertEqual(len(self.offers), 1)

    def test_poll_survives_database_errors(self):
        with mock.patch.object(self.monitor, "reconcile", side_effect=DatabaseError("locked")):
            self.assertIsNone(self.monitor.poll_once())


class DispatchMonitorResilienceTests(TestCase):
    def setUp(self):
        self.provider = make_provider()

    def test_failed_delivery_is_retried_on_next_poll(self):
        on_offer = mock.Mock(side_effect=[RuntimeError("session closed"), None])
        monitor = matching.DispatchMonitor(self.provider.pk, on_offer, poll_interval=1)
        request = make_request()

        self.assertIsNone(monitor.poll_once())
        offer = monitor.poll_once()

        self.assertEqual(offer, matching.Offer("open", request.pk, Status.PENDING))
        self.assertEqual(on_offer.call_count, 2)

    def test_poll_loop_recycles_and_closes_its_connection(self):
        monitor = matching.DispatchMonitor(self.provider.pk, mock.Mock(), poll_interval=1)
        monitor._stop.set()

        with mock.patch.object(monitor, "poll_once") as poll_once, \
                mock.patch("towing.matching.close_old_connections") as close_old, \
                mock.patch("towing.matching.connection") as conn:
            monitor._poll_loop()

        poll_once.assert_called_once_with()
        close_old.assert_called_once_with()
        conn.close.assert_called_once_with()

    def test_poll_loop_closes_connection_after_unexpected_error(self):
        monitor = matching.DispatchMonitor(self.provider.pk, mock.Mock(), poll_interval=1)

        with mock.patch.object(monitor, "poll_once", side_effect=KeyboardInterrupt), \
                mock.patch("towing.matching.close_old_connections"), \
                mock.patch("towing.matching.connection") as conn:
            with self.assertRaises(KeyboardInterrupt):
                monitor._poll_loop()

        conn.close.assert_called_once_with()


class ConcurrentClaimTests(TransactionTestCase):
    workers = 6

    def claim_with_retry(self, request_id, provider_id):
        # Same conditional write as matching.claim, without the re-read. SQLite
        # reports lock contention instead of waiting on it.
        for _ in range(50):
            try:
                rows = lifecycle.transition(
                    request_id,
                    Status.PENDING,
                    Status.IN_PROGRESS,
                    fields={"provider_id": provider_id},
                    provider__isnull=True,
                )
                return rows == 1
            except OperationalError:
                time.sleep(0.01)
        raise AssertionError("claim never reached the database")

    def test_exactly_one_concurrent_claim_wins(self):
        providers = [make_provider(f"Provider {index}") for index in range(self.workers)]
        request = make_request()
        barrier = threading.Barrier(self.workers)
        results = {}
        errors = []

        def worker(provider):
            try:
                barrier.wait(timeout=5)
                results[provider.pk] = self.claim_with_retry(request.pk, provider.pk)
            except Exception as error:
                errors.append(error)
            finally:
                connection.close()

        threads = [threading.Thread(target=worker, args=(provider,)) for provider in providers]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=10)

        self.assertEqual(errors, [])
        winners = [provider_id for provider_id, applied in results.items() if applied]
        self.assertEqual(len(results), self.workers)
        self.assertEqual(len(winners), 1)
        request.refresh_from_db()
        self.assertEqual(request.provider_id, winners[0])
        self.assertEqual(request.status, Status.IN_PROGRESS)
