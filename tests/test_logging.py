"""Tests for the structlog processors."""
from typing import Any, Dict

from config import Settings
from monitoring.logging import add_app_context, mask_card_data


class TestLogProcessors:
    def test_card_token_is_truncated(self) -> None:
        event: Dict[str, Any] = {
            "event": "payment_settled",
            "token": "a1b2c3d4-e5f6-7788-99aa-bbccddeeff00",
            "api_password": "s3cr3t-password",
            "low_profile_id": "lp-0001",
        }

        masked = mask_card_data(None, "info", event)

        assert masked["token"] == "a1b2c3d4..."
        assert masked["api_password"] == "s3cr3t-p..."
        assert masked["low_profile_id"] == "lp-0001"

    def test_short_values_untouched(self) -> None:
        masked = mask_card_data(None, "info", {"token": "tok-1", "card_token": None})

        assert masked == {"token": "tok-1", "card_token": None}

    def test_app_context_added(self, test_settings: Settings) -> None:
        event = add_app_context(None, "info", {"event": "request_started"})

        assert event["app_name"] == test_settings.app_name
        assert event["app_env"] == "test"
