import unittest
from datetime import timedelta

from scheduling import SchedulingSettings


class SchedulingSettingsTests(unittest.TestCase):
    def test_defaults(self) -> None:
        settings = SchedulingSettings.from_env({})

        self.assertEqual(settings, SchedulingSettings())
        self.assertEqual(settings.default_duration, timedelta(minutes=30))
        self.assertEqual(settings.booking_horizon, timedelta(days=365))

    def test_environment_overrides(self) -> None:
        settings = SchedulingSettings.from_env(
            {
                "BOOKING_LOCK_TIMEOUT_SECONDS": "1.5",
                "BOOKING_MAX_ATTEMPTS": "5",
                "BOOKING_BACKOFF_FACTOR": "0.2",
                "BOOKING_HORIZON_DAYS": "90",
                "BOOKING_DEFAULT_DURATION_MINUTES": " 20 ",
                "BOOKING_EVENT_DELIVERY_ATTEMPTS": "",
                "BOOKING_DEAD_LETTER_LIMIT": "250",
            }
        )

        self.assertEqual(settings.lock_timeout_seconds, 1.5)
        self.assertEqual(settings.max_attempts, 5)
        self.assertEqual(settings.booking_horizon_days, 90)
        self.assertEqual(settings.default_duration_minutes, 20)
        self.assertEqual(settings.event_delivery_attempts, 3)
        self.assertEqual(settings.dead_letter_limit, 250)

    def test_invalid_environment_values(self) -> None:
        with self.assertRaises(ValueError):
            SchedulingSettings.from_env({"BOOKING_MAX_ATTEMPTS": "many"})
        with self.assertRaises(ValueError):
            SchedulingSettings.from_env({"BOOKING_HORIZON_DAYS": "0"})
        with self.assertRaises(ValueError):
            SchedulingSettings.from_env({"BOOKING_LOCK_TIMEOUT_SECONDS": "0"})
        with self.assertRaises(ValueError):
            SchedulingSettings.from_env({"BOOKING_DEAD_LETTER_LIMIT": "0"})

    def test_backoff_is_exponential(self) -> None:
        settings = SchedulingSettings(backoff_factor=0.5)

        self.assertEqual([settings.backoff_for(n) for n in (1, 2, 3)], [0.5, 1.0, 2.0])


if __name__ == "__main__":
    unittest.main()
