"""
Time source tests
"""
import pytest
from datetime import datetime, timedelta, timezone

from clinic_automation.clock import Clock, FrozenClock, SystemClock, as_naive_utc


class TestClock:

    def test_interface_cannot_be_instantiated(self):
        with pytest.raises(TypeError):
            Clock()

    def test_subclass_must_implement_now(self):
        class Broken(Clock):
            pass

        with pytest.raises(TypeError):
            Broken()

    def test_system_clock_is_naive(self):
        assert SystemClock().now().tzinfo is None

    def test_frozen_clock_advances(self):
        clock = FrozenClock(datetime(2026, 3, 2, 15, 0))

        clock.advance(days=2, hours=1)

        assert clock.now() == datetime(2026, 3, 4, 16, 0)
        assert clock.advance(timedelta(minutes=5)) == datetime(2026, 3, 4, 16, 5)

    def test_aware_datetimes_become_naive_utc(self):
        aware = datetime(2026, 3, 2, 10, 0, tzinfo=timezone(timedelta(hours=-5)))

        assert as_naive_utc(aware) == datetime(2026, 3, 2, 15, 0)
        assert as_naive_utc(datetime(2026, 3, 2, 15, 0)) == datetime(2026, 3, 2, 15, 0)
