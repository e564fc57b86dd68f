"""
Hebrew transactional emails.

Sent over SMTP from a worker thread. Email is a side effect: every
send returns a bool and failures are logged, never raised.
"""
import asyncio
import smtplib
from datetime import datetime
from email.message import EmailMessage
from typing import Optional

import structlog

from config import Settings, get_settings
from core.plans import plan_label
from monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

SIGNATURE = "<p>בברכה,<br>צוות התמיכה</p>"


def format_date(value: Optional[datetime]) -> str:
    """dd/mm/yyyy, the format users see in every email."""
    if value is None:
        return ""
    return value.strftime("%d/%m/%Y")


def _rtl(body: str) -> str:
    return (
        '<div dir="rtl" style="text-align: right; font-family: Arial, sans-serif;">'
        f"{body}{SIGNATURE}</div>"
    )


class EmailNotifier:
    """Renders and sends notification emails."""

    def __init__(self, settings: Optional[Settings] = None) -> None:
        self.settings = settings or get_settings()

    def _deliver(self, message: EmailMessage) -> None:
        with smtplib.SMTP(self.settings.smtp_host, self.settings.smtp_port, timeout=30) as smtp:
            if self.settings.smtp_use_tls:
                smtp.starttls()
            if self.settings.smtp_username:
                smtp.login(self.settings.smtp_username, self.settings.smtp_password)
            smtp.send_message(message)

    async def send(self, template: str, to: str, subject: str, html: str) -> bool:
        """
        Send one HTML email.

        Returns:
            bool: True if the SMTP server accepted the message
        """
        if not self.settings.email_enabled:
            logger.info("email_disabled", template=template, to=to)
            return False

        message = EmailMessage()
        message["From"] = self.settings.smtp_sender
        message["To"] = to
        message["Subject"] = subject
        message.set_content(subject)
        message.add_alternative(html, subtype="html")

        try:
            await asyncio.to_thread(self._deliver, message)
        except (smtplib.SMTPException, OSError) as e:
            metrics.record_email(template, sent=False)
            logger.warning("email_send_failed", template=template, to=to, error=str(e))
            return False

        metrics.record_email(template, sent=True)
        logger.info("email_sent", template=template, to=to)
        return True

    async def send_cancellation(self, to: str, period_ends_at: Optional[datetime]) -> bool:
        html = _rtl(
            "<h2>ביטול מנוי - אישור</h2>"
            "<p>שלום,</p>"
            "<p>המנוי שלך בוטל בהצלחה.</p>"
            f"<p>המנוי שלך יישאר פעיל עד {format_date(period_ends_at)}.</p>"
            "<p>אם תרצה לחדש את המנוי, תוכל לעשות זאת בכל עת דרך האתר תוך 30 ימים.</p>"
        )
        return await self.send("cancellation", to, "אישור ביטול המנוי", html)

    async def send_reactivation(
        self, to: str, plan_type: str, period_ends_at: Optional[datetime]
    ) -> bool:
        html = _rtl(
            "<h2>המנוי הופעל מחדש בהצלחה</h2>"
            "<p>שלום,</p>"
            f"<p>המנוי ה{plan_label(plan_type)} שלך הופעל מחדש בהצלחה.</p>"
            f"<p>תקופת המנוי הנוכחית מסתיימת ב-{format_date(period_ends_at)}.</p>"
        )
        return await self.send("reactivation", to, "המנוי שלך הופעל מחדש", html)

    async def send_trial_reminder(self, to: str, trial_ends_at: Optional[datetime]) -> bool:
        html = _rtl(
            "<h2>תקופת הניסיון שלך מסתיימת בקרוב</h2>"
            "<p>שלום,</p>"
            f"<p>תקופת הניסיון שלך תסתיים ב-{format_date(trial_ends_at)}.</p>"
            "<p>בסיום תקופת הניסיון יחויב אמצעי התשלום שלך והמנוי החודשי יופעל אוטומטית.</p>"
        )
        return await self.send(
            "trial_reminder", to, "תזכורת: תקופת הניסיון שלך מסתיימת בקרוב", html
        )

    async def send_annual_reminder(
        self, to: str, renews_at: Optional[datetime], amount_cents: int
    ) -> bool:
        html = _rtl(
            "<h2>חידוש המנוי השנתי</h2>"
            "<p>שלום,</p>"
            f"<p>המנוי השנתי שלך יתחדש ב-{format_date(renews_at)}.</p>"
            f"<p>סכום החיוב: ₪{amount_cents / 100:,.2f}</p>"
            "<p>אם ברצונך לבטל את החידוש, ניתן לעשות זאת דרך עמוד המנוי באתר.</p>"
        )
        return await self.send("annual_reminder", to, "תזכורת: חידוש המנוי השנתי שלך", html)

    async def send_payment_failed(
        self, to: str, reason: str, grace_period_ends_at: Optional[datetime]
    ) -> bool:
        html = _rtl(
            "<h2>החיוב נכשל</h2>"
            "<p>שלום,</p>"
            "<p>לא הצלחנו לחייב את אמצעי התשלום שלך עבור חידוש המנוי.</p>"
            f"<p>סיבה: {reason}</p>"
            f"<p>הגישה שלך תישמר עד {format_date(grace_period_ends_at)}. "
            "אנא עדכן את פרטי התשלום כדי להמשיך ליהנות מהמנוי.</p>"
        )
        return await self.send("payment_failed", to, "החיוב עבור המנוי נכשל", html)

    async def send_payment_recovery(self, to: str, recovery_url: str) -> bool:
        html = _rtl(
            "<h2>השלמת תשלום</h2>"
            "<p>שלום,</p>"
            "<p>נראה שהתשלום שלך לא הושלם. ניתן להשלים אותו בלחיצה על הקישור הבא:</p>"
            f'<p><a href="{recovery_url}">להשלמת התשלום</a></p>'
            f"<p>קישור זה יהיה זמין למשך {self.settings.recovery_link_ttl_hours} שעות.</p>"
        )
        return await self.send("payment_recovery", to, "השלמת תשלום במערכת", html)
