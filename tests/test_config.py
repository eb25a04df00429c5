"""Unit tests for photo_escrow/config.py defaults and computed properties."""

from datetime import timedelta
from decimal import Decimal

from photo_escrow.config import Settings


def test_confirmation_window_default() -> None:
    assert Settings().confirmation_window == timedelta(hours=48)


def test_confirmation_window_override() -> None:
    assert Settings(confirmation_window_hours=72).confirmation_window == timedelta(hours=72)


def test_default_policy() -> None:
    s = Settings()
    assert s.default_max_revisions == 2
    assert s.platform_fee_percent == Decimal("0.10")
    assert s.sweeper_interval_seconds == 300
    assert s.payout_max_attempts == 5


def test_default_settings_testable() -> None:
    """Default settings should have test-friendly defaults."""
    s = Settings()
    assert s.env != "production"
    assert s.payment_gateway_backend == "log"  # no money moves
    assert s.test_database_url.startswith("sqlite+aiosqlite")
