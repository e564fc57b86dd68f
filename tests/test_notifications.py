"""
Email notification tests.
"""
import smtplib
from datetime import datetime

import pytest

from config import Settings
from core.notifications import EmailNotifier, format_date


def _html(notifier: EmailNotifier) -> str:
    message = notifier._deliver.call_args.args[0]
    return message.get_body(("html",)).get_content()


class TestEmailNotifier:
    """Rendering and delivery outcomes."""

    @pytest.mark.unit
    def test_format_date(self) -> None:
        assert format_date(datetime(2025, 3, 7, 15, 0)) == "07/03/2025"
        assert format_date(None) == ""

    @pytest.mark.asyncio
    async def test_cancellation_email(self, notifier: EmailNotifier, test_settings: Settings) -> None:
        sent = await notifier.send_cancellation("user@example.com", datetime(2025, 6, 1))

        assert sent is True
        message = notifier._deliver.call_args.args[0]
        assert message["To"] == "user@example.com"
        assert message["From"] == test_settings.smtp_sender
        html = _html(notifier)
        assert 'dir="rtl"' in html
        assert "01/06/2025" in html

    @pytest.mark.asyncio
    async def test_reactivation_names_plan(self, notifier: EmailNotifier) -> None:
        await notifier.send_reactivation("user@example.com", "annual", datetime(2026, 1, 15))

        html = _html(notifier)
        assert "שנתי" in html
        assert "15/01/2026" in html

    @pytest.mark.asyncio
    async def test_payment_failed_shows_grace_end(self, notifier: EmailNotifier) -> None:
        await notifier.send_payment_failed("user@example.com", "Declined", datetime(2025, 9, 9))

        assert "09/09/2025" in _html(notifier)

    @pytest.mark.asyncio
    async def test_recovery_link(self, notifier: EmailNotifier) -> None:
        await notifier.send_payment_recovery("user@example.com", "https://app/subscription?recover=1")

        assert "https://app/subscription?recover=1" in _html(notifier)

    @pytest.mark.asyncio
    async def test_smtp_failure_returns_false(self, notifier: EmailNotifier) -> None:
        notifier._deliver.side_effect = smtplib.SMTPServerDisconnected("gone")

        assert await notifier.send_trial_reminder("user@example.com", datetime(2025, 1, 1)) is False

    @pytest.mark.asyncio
    async def test_disabled_email_is_not_sent(
        self, notifier: EmailNotifier, test_settings: Settings
    ) -> None:
        notifier.settings = test_settings.model_copy(update={"email_enabled": False})

        assert await notifier.send_cancellation("user@example.com", None) is False
        notifier._deliver.assert_not_called()
