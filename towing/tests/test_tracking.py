from unittest import mock

from django.test import SimpleTestCase

from towing.models import Request
from towing.tracking import (
    Fix, FollowCooldown, MarkerSmoother, PositionThrottle, TrackingEstimator, eta_minutes, target_for,
)

from .utils import FakeTimerFactory

Status = Request.Status


def unsaved_request(status, with_destination=True):
    return Request(
        status=status,
        origin_lat=-23.55,
        origin_lng=-46.63,
        destination_lat=-23.60 if with_destination else None,
        destination_lng=-46.70 if with_destination else None,
    )


class PositionThrottleTests(SimpleTestCase):
    def test_send_policy(self):
        throttle = PositionThrottle(min_interval_s=15, max_interval_s=60, min_distance_m=25)

        self.assertTrue(throttle.offer(Fix(0.0, 0.0, 0)))
        # Too soon, however far it moved.
        self.assertFalse(throttle.offer(Fix(0.001, 0.0, 5)))
        # Interval elapsed but only ~11 m moved.
        self.assertFalse(throttle.offer(Fix(0.0001, 0.0, 20)))
        # Interval elapsed and ~33 m moved.
        self.assertTrue(throttle.offer(Fix(0.0003, 0.0, 20)))
        # Heartbeat: stationary, but 61 s since the last send.
        self.assertTrue(throttle.offer(Fix(0.0003, 0.0, 81)))

    def test_rejected_fix_is_not_recorded(self):
        throttle = PositionThrottle(min_interval_s=15, max_interval_s=60, min_distance_m=25)
        throttle.offer(Fix(0.0, 0.0, 0))
        throttle.offer(Fix(0.0, 0.0, 10))

        self.assertEqual(throttle.last_sent, Fix(0.0, 0.0, 0))

    def test_explicit_zero_limits_are_kept(self):
        with self.settings(TOWING_CONFIG={"throttle_min_interval_seconds": 15, "throttle_min_distance_m": 25}):
            throttle = PositionThrottle(min_interval_s=0, max_interval_s=60, min_distance_m=0)

        self.assertEqual((throttle.min_interval_s, throttle.min_distance_m), (0, 0))
        throttle.offer(Fix(0.0, 0.0, 0))
        self.assertTrue(throttle.offer(Fix(0.0, 0.0, 1)))


class EstimatorTests(SimpleTestCase):
    def make_estimator(self):
        return TrackingEstimator(
            heading_noise_floor_m=5,
            speed_window=10,
            min_samples=3,
            min_speed_kmh=1,
            max_speed_kmh=200,
            max_sample_gap_s=60,
            fallback_speed_kmh=40,
        )

    def test_heading_follows_movement_and_ignores_jitter(self):
        estimator = self.make_estimator()
        estimator.observe(Fix(0.0, 0.0, 0))
        estimator.observe(Fix(0.001, 0.0, 10))
        self.assertAlmostEqual(estimator.heading, 0.0, places=3)

        estimator.observe(Fix(0.001, 0.001, 20))
        self.assertAlmostEqual(estimator.heading, 90.0, delta=0.1)

        # ~1 m of GPS jitter keeps the previous heading.
        estimator.observe(Fix(0.00101, 0.00099, 30))
        self.assertAlmostEqual(estimator.heading, 90.0, delta=0.1)

    def test_speed_uses_fallback_until_enough_samples(self):
        estimator = self.make_estimator()
        estimator.observe(Fix(0.0, 0.0, 0))
        estimator.observe(Fix(0.002, 0.0, 10))
        estimator.observe(Fix(0.004, 0.0, 20))
        self.assertEqual(estimator.speed_kmh, 40)

        estimator.observe(Fix(0.006, 0.0, 30))
        self.assertAlmostEqual(estimator.speed_kmh, 80.06, delta=0.1)

    def test_implausible_samples_are_dropped(self):
        estimator = self.make_estimator()
        estimator.observe(Fix(0.0, 0.0, 0))
        # ~11 km in 10 s.
        estimator.observe(Fix(0.1, 0.0, 10))
        # Same timestamp.
        estimator.observe(Fix(0.101, 0.0, 10))
        # Gap too long.
        estimator.observe(Fix(0.102, 0.0, 80))

        self.assertEqual(len(estimator.samples), 0)
        self.assertEqual(estimator.speed_kmh, 40)

    def test_update_towards_pickup(self):
        estimator = self.make_estimator()
        estimate = estimator.update(Fix(-23.55, -46.63, 0), unsaved_request(Status.IN_PROGRESS))

        self.assertLess(estimate.remaining_m, 1)
        self.assertEqual(estimate.eta_minutes, 1)

    def test_update_without_destination_has_no_eta(self):
        estimator = self.make_estimator()
        estimate = estimator.update(Fix(-23.55, -46.63, 0), unsaved_request(Status.EN_ROUTE, with_destination=False))

        self.assertIsNone(estimate.remaining_m)
        self.assertIsNone(estimate.eta_minutes)

    def test_zero_noise_floor_tracks_any_movement(self):
        with self.settings(TOWING_CONFIG={"heading_noise_floor_m": 5.0}):
            estimator = TrackingEstimator(heading_noise_floor_m=0)

        self.assertEqual(estimator.heading_noise_floor_m, 0)
        estimator.observe(Fix(0.0, 0.0, 0))
        # ~1 m east, below the configured floor.
        estimator.observe(Fix(0.0, 0.00001, 1))
        self.assertAlmostEqual(estimator.heading, 90.0, delta=1)


class TargetTests(SimpleTestCase):
    def test_pickup_before_loading_destination_after(self):
        for status in (Status.DIRECTED, Status.IN_PROGRESS, Status.ON_SITE):
            with self.subTest(status=status):
                self.assertEqual(target_for(unsaved_request(status)), (-23.55, -46.63))
        self.assertEqual(target_for(unsaved_request(Status.EN_ROUTE)), (-23.60, -46.70))

    def test_no_target_outside_the_trip(self):
        for status in (Status.PENDING, Status.FINALIZED, Status.CANCELLED):
            with self.subTest(status=status):
                self.assertIsNone(target_for(unsaved_request(status)))


class EtaTests(SimpleTestCase):
    def test_floor_of_one_minute(self):
        self.assertEqual(eta_minutes(0, 40), 1)
        self.assertEqual(eta_minutes(50, 40), 1)

    def test_rounds_up(self):
        self.assertEqual(eta_minutes(10000, 40), 15)
        self.assertEqual(eta_minutes(10001, 40), 16)


class FollowCooldownTests(SimpleTestCase):
    def setUp(self):
        self.factory = FakeTimerFactory()
        self.on_resume = mock.Mock()
        self.cooldown = FollowCooldown(cooldown_s=8, timer_factory=self.factory, on_resume=self.on_resume)

    def test_resumes_after_cooldown(self):
        self.cooldown.interaction_started()
        self.assertFalse(self.cooldown.following)
        self.cooldown.interaction_ended()

        self.assertEqual(self.factory.last.delay, 8)
        self.factory.last.fire()
        self.assertTrue(self.cooldown.following)
        self.on_resume.assert_called_once_with()

    def test_new_interaction_restarts_cooldown(self):
        self.cooldown.interaction_ended()
        first = self.factory.last
        self.cooldown.interaction_started()
        self.cooldown.interaction_ended()

        first.fire()
        self.assertFalse(self.cooldown.following)
        self.factory.last.fire()
        self.assertTrue(self.cooldown.following)

    def test_recenter_resumes_immediately(self):
        self.cooldown.interaction_ended()
        pending = self.factory.last
        self.cooldown.recenter()

        self.assertTrue(self.cooldown.following)
        pending.fire()
        self.on_resume.assert_not_called()


class MarkerSmootherTests(SimpleTestCase):
    def test_first_fix_is_immediate(self):
        smoother = MarkerSmoother(duration_s=2)
        self.assertIsNone(smoother.position(0))

        smoother.push(1.0, 1.0, now=0)
        self.assertEqual(smoother.position(0), (1.0, 1.0))
        self.assertFalse(smoother.animating(0))

    def test_retargets_from_current_position(self):
        smoother = MarkerSmoother(duration_s=2)
        smoother.push(0.0, 0.0, now=0)
        smoother.push(1.0, 1.0, now=10)

        self.assertTrue(smoother.animating(11))
        self.assertEqual(smoother.position(11), (0.5, 0.5))

        smoother.push(2.0, 2.0, now=11)
        self.assertEqual(smoother.position(12), (1.25, 1.25))
        self.assertEqual(smoother.position(20), (2.0, 2.0))
        self.assertFalse(smoother.animating(20))
