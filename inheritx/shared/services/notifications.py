"""
Notification Service for plan owners, beneficiaries and operators

Supports multiple notification channels:
- Email via SMTP (beneficiary claim codes, owner check-in prompts)
- Telegram Bot (operator alerts)
- Console (when no channel is configured, for local development)

Configure via environment variables (see inheritx.core.config).
Claim codes are never written to logs; the console channel masks them.
"""

import logging
import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Any, Dict, Optional

import requests

from inheritx.core.config import Settings, settings as default_settings

logger = logging.getLogger(__name__)


# Display names for the supported asset classes
ASSET_NAMES = {
    'ERC20_TOKEN1': 'ETH',
    'ERC20_TOKEN2': 'USDT',
    'ERC20_TOKEN3': 'USDC',
    'NFT': 'NFT',
}

ASSET_DECIMALS = {
    'ERC20_TOKEN1': 18,
    'ERC20_TOKEN2': 6,
    'ERC20_TOKEN3': 6,
    'NFT': 0,
}

PERIOD_NAMES = {
    'MONTHLY': 'Month',
    'QUARTERLY': 'Quarter',
    'YEARLY': 'Year',
}


def format_base_units(amount: int, asset_type: str) -> str:
    """Render a base-unit amount as a human decimal string (1500000 USDT units -> '1.5')."""
    decimals = ASSET_DECIMALS.get(asset_type, 18)
    if decimals == 0:
        return str(amount)
    whole, frac = divmod(int(amount), 10 ** decimals)
    frac_str = str(frac).rjust(decimals, '0').rstrip('0')
    return f"{whole}.{frac_str}" if frac_str else str(whole)


class NotificationService:
    """Unified notification service supporting multiple channels."""

    def __init__(self, config: Optional[Settings] = None):
        self.config = config or default_settings

        self.telegram_enabled = bool(self.config.TELEGRAM_BOT_TOKEN and self.config.TELEGRAM_CHAT_ID)
        self.email_enabled = bool(self.config.SMTP_HOST and self.config.SMTP_USER)

        enabled = []
        if self.telegram_enabled:
            enabled.append("Telegram")
        if self.email_enabled:
            enabled.append("Email")

        if enabled:
            logger.info(f"Notification channels enabled: {', '.join(enabled)}")
        else:
            logger.warning("No notification channels configured; messages go to the console log.")

    def send_claim_code(
        self,
        beneficiary_email: str,
        plan_id: int,
        code: str,
        beneficiary_name: str = "",
        plan_name: str = "",
        amount: Optional[str] = None,
        asset_type: Optional[str] = None,
    ) -> bool:
        """Deliver a beneficiary's claim code together with the claim link."""
        claim_url = f"{self.config.FRONTEND_URL}/claim/{plan_id}"
        lines = [
            f"Hello {beneficiary_name or 'there'},",
            "",
            f"You have been named a beneficiary of the inheritance plan \"{plan_name}\".",
        ]
        if amount is not None:
            lines.append(f"Your allocation: {amount} {ASSET_NAMES.get(asset_type, asset_type or '')}".rstrip())
        lines += [
            "",
            f"Your claim code: {code}",
            f"Claim here: {claim_url}",
            "",
            "Keep this code private. You will also need your name, email and relationship exactly as registered.",
        ]
        return self._deliver(
            to=beneficiary_email,
            subject=f"Inheritance claim available: {plan_name}",
            body="\n".join(lines),
            secret=code,
        )

    def send_check_in_prompt(self, owner_email: str, token: str, plan_name: str = "") -> bool:
        """Ask a plan owner to confirm they are still active."""
        confirm_url = f"{self.config.FRONTEND_URL}/proof-of-life/confirm?token={token}"
        body = (
            f"Please confirm you are still active for your inheritance plan \"{plan_name}\".\n\n"
            f"Confirm here: {confirm_url}\n\n"
            "If several prompts go unanswered and early claim is enabled, your beneficiaries "
            "will be able to claim before the scheduled transfer date."
        )
        return self._deliver(
            to=owner_email,
            subject="Proof of life check-in",
            body=body,
            secret=token,
        )

    def send_distribution_notice(
        self,
        beneficiary_email: str,
        plan_name: str,
        distribution_method: str,
        period_number: int,
        amount: str,
        asset_type: str,
        executed: bool = False,
    ) -> bool:
        """Announce an upcoming (or completed) periodic distribution to a beneficiary."""
        period_name = PERIOD_NAMES.get(distribution_method, 'Period')
        asset = ASSET_NAMES.get(asset_type, asset_type)
        if executed:
            subject = f"{plan_name} - {period_name} {period_number} distributed"
            body = f"{amount} {asset} has been released to you for {period_name.lower()} {period_number}."
        else:
            subject = f"{plan_name} - {period_name} {period_number} upcoming"
            body = f"{amount} {asset} is scheduled for release to you for {period_name.lower()} {period_number}."
        return self._deliver(to=beneficiary_email, subject=subject, body=body)

    def send_plan_created(self, owner_email: str, plan_name: str, amount: str, asset_type: str) -> bool:
        body = (
            f"Your inheritance plan \"{plan_name}\" is active.\n"
            f"Escrowed: {amount} {ASSET_NAMES.get(asset_type, asset_type)}"
        )
        return self._deliver(to=owner_email, subject="Inheritance plan created", body=body)

    def send_operator_alert(self, title: str, message: str) -> Dict[str, Any]:
        """
        Send an operator alert (exhausted retries, stuck plans).

        Returns:
            Dict of channel -> success status
        """
        results: Dict[str, Any] = {}

        if self.telegram_enabled:
            results["telegram"] = self._send_telegram(f"*{title}*\n\n{message}")

        if self.email_enabled and self.config.OPERATOR_EMAIL:
            results["email"] = self._send_email(self.config.OPERATOR_EMAIL, title, message)

        if not results:
            logger.error(f"OPERATOR ALERT: {title} - {message}")
            results["console"] = True

        return results

    def _deliver(self, to: Optional[str], subject: str, body: str, secret: Optional[str] = None) -> bool:
        if not to:
            logger.warning(f"No recipient for notification '{subject}'")
            return False
        if self.email_enabled:
            return self._send_email(to, subject, body)

        shown = body.replace(secret, "******") if secret else body
        logger.info(f"[console notification] to={to} subject={subject!r}\n{shown}")
        return True

    def _send_telegram(self, message: str) -> bool:
        """Send message via Telegram bot."""
        try:
            url = f"https://api.telegram.org/bot{self.config.TELEGRAM_BOT_TOKEN}/sendMessage"
            data = {
                "chat_id": self.config.TELEGRAM_CHAT_ID,
                "text": message,
                "parse_mode": "Markdown"
            }

            response = requests.post(url, json=data, timeout=10)
            response.raise_for_status()

            logger.info("Telegram alert sent successfully")
            return True

        except requests.RequestException as e:
            logger.error(f"Failed to send Telegram notification: {e}")
            return False

    def _send_email(self, to: str, subject: str, body: str) -> bool:
        """Send email notification."""
        try:
            msg = MIMEMultipart()
            msg['From'] = self.config.SMTP_FROM or self.config.SMTP_USER
            msg['To'] = to
            msg['Subject'] = subject

            msg.attach(MIMEText(body, 'plain'))

            server = smtplib.SMTP(self.config.SMTP_HOST, self.config.SMTP_PORT or 587, timeout=30)
            try:
                server.starttls()
                server.login(self.config.SMTP_USER, self.config.SMTP_PASSWORD or "")
                server.send_message(msg)
            finally:
                server.quit()

            logger.info(f"Email notification sent: {subject!r}")
            return True

        except (smtplib.SMTPException, OSError) as e:
            logger.error(f"Failed to send email notification: {e}")
            return False


# Global instance
_notification_service: Optional[NotificationService] = None


def get_notification_service() -> NotificationService:
    """Get or create the global notification service instance."""
    global _notification_service
    if _notification_service is None:
        _notification_service = NotificationService()
    return _notification_service
