"""Operator email alerts for workflow failures, sent over SMTP."""

import asyncio
import os
import smtplib
import time
from collections import OrderedDict
from email.message import EmailMessage
from functools import partial
from typing import Any, Dict, List, Optional

from loguru import logger

from intake_workflow.utils import utc_now

COOLDOWN_SECONDS = 300
# Keys include record ids, so the cooldown table has to be bounded
MAX_ALERT_KEYS = 1000

UPSTREAM_ERROR_TYPES = {"CircuitOpenError", "TokenRefreshError"}


class EmailAlerter:
    """One email per alert key per cooldown window; disabled without SMTP credentials."""

    def __init__(
        self,
        smtp_host: str = "smtp.gmail.com",
        smtp_port: int = 587,
        smtp_username: Optional[str] = None,
        smtp_password: Optional[str] = None,
        recipients: Optional[List[str]] = None,
        environment: str = "local",
    ):
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_username = smtp_username
        self.smtp_password = smtp_password
        self.recipients = recipients or []
        self.environment = environment
        self._enabled = bool(smtp_username and smtp_password and self.recipients)
        self._sent_at: "OrderedDict[str, float]" = OrderedDict()

        if self._enabled:
            logger.info(f"Email alerting enabled: {len(self.recipients)} recipients")
        else:
            logger.warning("Email alerting not configured (set SMTP_USERNAME, SMTP_PASSWORD, ALERT_RECIPIENTS)")

    @classmethod
    def from_env(cls, environment: str = "local") -> "EmailAlerter":
        return cls(
            smtp_host=os.getenv("SMTP_HOST", "smtp.gmail.com"),
            smtp_port=int(os.getenv("SMTP_PORT", "587")),
            smtp_username=os.getenv("SMTP_USERNAME"),
            smtp_password=os.getenv("SMTP_PASSWORD"),
            recipients=[r.strip() for r in os.getenv("ALERT_RECIPIENTS", "").split(",") if r.strip()],
            environment=environment,
        )

    def is_enabled(self) -> bool:
        return self._enabled

    def _take_slot(self, key: str) -> bool:
        """Claim the cooldown slot for ``key``; False while a previous alert is still cooling down."""
        now = time.monotonic()
        last = self._sent_at.get(key)
        if last is not None and now - last < COOLDOWN_SECONDS:
            return False

        self._sent_at.pop(key, None)
        while len(self._sent_at) >= MAX_ALERT_KEYS:
            self._sent_at.popitem(last=False)
        self._sent_at[key] = now
        return True

    async def send_alert(self, subject: str, body: str, priority: str = "normal",
                         alert_key: Optional[str] = None) -> bool:
        """Send an alert email.

        Returns:
            bool: True if an email went out, False if disabled or cooling down

        Raises:
            smtplib.SMTPException / OSError: the SMTP exchange failed
        """
        if not self._enabled:
            logger.warning(f"Alert not sent (alerting disabled): {subject}")
            return False

        # The slot is taken before sending; an SMTP outage must not become an alert storm
        if not self._take_slot(alert_key or subject):
            logger.debug(f"Alert suppressed during cooldown: {subject}")
            return False

        message = self._build_message(subject, body, priority)
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, partial(self._deliver, message))
        logger.info(f"Alert sent: {subject}")
        return True

    def _build_message(self, subject: str, body: str, priority: str) -> EmailMessage:
        message = EmailMessage()
        message["Subject"] = f"[Intake Workflow {self.environment.upper()}] {subject}"
        message["From"] = self.smtp_username
        message["To"] = ", ".join(self.recipients)
        if priority == "high":
            message["X-Priority"] = "1"

        stamp = utc_now().strftime("%Y-%m-%d %H:%M:%S UTC")
        message.set_content(f"{body}\n\n---\nTimestamp: {stamp}\nEnvironment: {self.environment}")
        return message

    def _deliver(self, message: EmailMessage):
        with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=30) as server:
            server.starttls()
            server.login(self.smtp_username, self.smtp_password)
            server.send_message(message)

    async def alert_workflow_error(
        self,
        stage: str,
        error: str,
        record_id: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> bool:
        error_type = (context or {}).get("error_type")
        if error_type in UPSTREAM_ERROR_TYPES:
            return await self.alert_service_degraded("athenahealth", error)

        lines = [
            "An intake workflow stage failed.",
            "",
            f"Stage: {stage}",
            f"Record ID: {record_id or 'N/A'}",
            f"Error: {error}",
        ]
        for key, value in (context or {}).items():
            if value is not None:
                lines.append(f"{key}: {value}")
        lines += ["", "Failed records are retried by reconciliation until their retry limit is reached."]

        return await self.send_alert(
            f"Workflow Error: {stage}",
            "\n".join(lines),
            priority="high",
            alert_key=f"workflow_error:{stage}:{record_id or '-'}",
        )

    async def alert_service_degraded(self, service: str, error: str) -> bool:
        """One alert per upstream per cooldown, however many records it affects."""
        body = (
            f"Calls to {service} are failing.\n\n"
            f"Error: {error}\n\n"
            "Affected messages are backing off and will resume once the upstream recovers."
        )
        return await self.send_alert(
            f"Service Degraded: {service}", body, priority="high", alert_key=f"service_degraded:{service}"
        )
