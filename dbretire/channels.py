"""
Alert Channels
==============

Delivery targets for alerts. Each channel declares a severity filter and
implements send(); the alert system wraps every send so one failing
channel never blocks the others.

Channel types:
- console:  themed Rich output
- email:    SMTP, run in a worker thread
- slack:    incoming-webhook POST via aiohttp
- webhook:  JSON POST via aiohttp
- database: rows in the alert_records table
"""

import asyncio
import logging
import smtplib
from abc import ABC, abstractmethod
from email.mime.text import MIMEText
from typing import TYPE_CHECKING, Any, Dict, Iterable, Optional

import aiohttp
from rich.markup import escape
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from dbretire.config import SEVERITIES, ChannelConfig
from dbretire.db.models import AlertRecordModel
from dbretire.output import console, icon

if TYPE_CHECKING:
    from dbretire.alerts import Alert

logger = logging.getLogger(__name__)


class AlertChannel(ABC):
    """Base class for alert delivery channels."""

    type: str = "base"

    def __init__(self, name: Optional[str] = None, severity_filter: Optional[Iterable[str]] = None):
        self.name = name or self.type
        self.severity_filter = set(severity_filter if severity_filter is not None else SEVERITIES)

    def accepts(self, alert: "Alert") -> bool:
        return alert.severity.value in self.severity_filter

    @abstractmethod
    async def send(self, alert: "Alert") -> None:
        ...

    async def update(self, alert: "Alert") -> None:
        """Called after an alert is acknowledged or resolved."""

    async def close(self) -> None:
        """Release any resources held by the channel."""


class ConsoleChannel(AlertChannel):
    type = "console"

    async def send(self, alert: "Alert") -> None:
        severity = alert.severity.value
        console.print(
            f"[dr.severity.{severity}]{icon('bell')} {severity.upper()}[/] "
            f"[dr.timestamp]{alert.timestamp.strftime('%Y-%m-%d %H:%M:%S')}[/] "
            f"[bold]{escape(alert.title)}[/]",
            highlight=False,
        )
        console.print(f"  [dr.muted]{escape(alert.message)}[/]", highlight=False)


class EmailChannel(AlertChannel):
    type = "email"

    def __init__(
        self,
        recipients: Iterable[str],
        smtp_host: str = "localhost",
        smtp_port: int = 587,
        sender: str = "dbretire@localhost",
        username: Optional[str] = None,
        password: Optional[str] = None,
        use_tls: bool = True,
        **kwargs,
    ):
        super().__init__(**kwargs)
        self.recipients = list(recipients)
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.sender = sender
        self.username = username
        self.password = password
        self.use_tls = use_tls

    def build_message(self, alert: "Alert") -> MIMEText:
        body = (
            f"{alert.message}\n\n"
            f"Severity: {alert.severity.value}\n"
            f"Type: {alert.type.value}\n"
            f"Time: {alert.timestamp.isoformat()}\n"
            f"Alert ID: {alert.id}\n"
        )
        msg = MIMEText(body)
        msg["Subject"] = f"[{alert.severity.value.upper()}] {alert.title}"
        msg["From"] = self.sender
        msg["To"] = ", ".join(self.recipients)
        return msg

    def _send_sync(self, msg: MIMEText) -> None:
        server = smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=30)
        try:
            if self.use_tls:
                server.starttls()
            if self.username and self.password:
                server.login(self.username, self.password)
            server.sendmail(self.sender, self.recipients, msg.as_string())
        finally:
            server.quit()

    async def send(self, alert: "Alert") -> None:
        if not self.recipients:
            logger.warning("Email channel %s has no recipients", self.name)
            return
        await asyncio.to_thread(self._send_sync, self.build_message(alert))


class WebhookChannel(AlertChannel):
    """POST the alert as JSON."""

    type = "webhook"

    def __init__(self, url: str, headers: Optional[Dict[str, str]] = None, timeout_seconds: float = 10, **kwargs):
        super().__init__(**kwargs)
        self.url = url
        self.headers = headers or {}
        self.timeout_seconds = timeout_seconds
        self._session: Optional[aiohttp.ClientSession] = None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout_seconds)
            )
        return self._session

    def build_payload(self, alert: "Alert") -> Dict[str, Any]:
        return alert.to_dict()

    async def send(self, alert: "Alert") -> None:
        session = await self._get_session()
        async with session.post(self.url, json=self.build_payload(alert), headers=self.headers) as response:
            if response.status >= 400:
                body = await response.text()
                raise RuntimeError(f"{self.type} channel {self.name} got HTTP {response.status}: {body[:200]}")

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None


class SlackChannel(WebhookChannel):
    """Slack incoming webhook."""

    type = "slack"

    _SEVERITY_EMOJI = {
        "info": ":information_source:",
        "warning": ":warning:",
        "error": ":x:",
        "critical": ":rotating_light:",
    }

    def __init__(self, url: str, channel: Optional[str] = None, **kwargs):
        super().__init__(url, **kwargs)
        self.channel = channel

    def build_payload(self, alert: "Alert") -> Dict[str, Any]:
        emoji = self._SEVERITY_EMOJI.get(alert.severity.value, "")
        payload: Dict[str, Any] = {
            "text": f"{emoji} *{alert.title}*\n{alert.message}",
        }
        if self.channel:
            payload["channel"] = self.channel
        return payload


class DatabaseChannel(AlertChannel):
    """Persist alerts in the state database."""

    type = "database"

    def __init__(self, session_maker: async_sessionmaker[AsyncSession], **kwargs):
        super().__init__(**kwargs)
        self.session_maker = session_maker

    def _to_model(self, alert: "Alert") -> AlertRecordModel:
        return AlertRecordModel(
            id=alert.id,
            timestamp=alert.timestamp,
            severity=alert.severity.value,
            type=alert.type.value,
            title=alert.title,
            message=alert.message,
            meta=alert.metadata,
            acknowledged=alert.acknowledged,
            resolved_at=alert.resolved_at,
        )

    async def send(self, alert: "Alert") -> None:
        async with self.session_maker() as session:
            session.add(self._to_model(alert))
            await session.commit()

    async def update(self, alert: "Alert") -> None:
        async with self.session_maker() as session:
            await session.merge(self._to_model(alert))
            await session.commit()


def create_channel(
    config: ChannelConfig,
    session_maker: Optional[async_sessionmaker[AsyncSession]] = None,
) -> AlertChannel:
    """Build a channel from its configuration."""
    common = {"name": config.name, "severity_filter": config.severity_filter}
    settings = dict(config.settings)

    if config.type == "console":
        return ConsoleChannel(**common)
    if config.type == "email":
        return EmailChannel(**settings, **common)
    if config.type == "slack":
        return SlackChannel(**settings, **common)
    if config.type == "webhook":
        return WebhookChannel(**settings, **common)
    if config.type == "database":
        if session_maker is None:
            raise ValueError("database alert channel requires an initialized state database")
        return DatabaseChannel(session_maker, **common)
    raise ValueError(f"Unknown alert channel type: {config.type}")
