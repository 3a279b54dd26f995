"""
Alert System
============

Turns qualifying events into severity-classified alerts, applies per-key
throttling and multi-level escalation, and fans alerts out to channels.

Throttling:
    One alert per key per throttle window. Keys look like
    ``deprecated_access_table_orders_legacy_deprecated_20240115``.

Escalation:
    Every non-throttled fire of a key increments its counter. Rules are
    evaluated in order starting at the key's current tier; the first rule
    whose count and window are satisfied raises the alert's severity and
    resets the counter for the next tier. Repeated trouble therefore
    ratchets from warning to error to critical instead of flooding at the
    highest severity.

Usage:
    alerts = AlertSystem(AlertPresets.development())
    await alerts.trigger_deprecated_element_access(event)
    alerts.get_alert_history(limit=20)
"""

import asyncio
import logging
import secrets
from collections import deque
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Deque, Dict, List, Optional, Tuple

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from dbretire.channels import AlertChannel, create_channel
from dbretire.clock import Clock, ensure_aware, parse_timestamp, utc_now
from dbretire.config import AlertConfig, ChannelConfig, EscalationRule
from dbretire.db.models import AlertRecordModel
from dbretire.events import AccessEvent
from dbretire.tasks import PeriodicTask

logger = logging.getLogger(__name__)


class AlertSeverity(Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]


_SEVERITY_RANK = {
    AlertSeverity.INFO: 0,
    AlertSeverity.WARNING: 1,
    AlertSeverity.ERROR: 2,
    AlertSeverity.CRITICAL: 3,
}


class AlertType(Enum):
    DEPRECATED_ELEMENT_ACCESS = "deprecated_element_access"
    THRESHOLD_EXCEEDED = "threshold_exceeded"
    USAGE_SPIKE = "usage_spike"
    SYSTEM_ERROR = "system_error"
    ESCALATION = "escalation"


@dataclass
class Alert:
    id: str
    timestamp: datetime
    severity: AlertSeverity
    type: AlertType
    title: str
    message: str
    metadata: Dict[str, Any] = field(default_factory=dict)
    acknowledged: bool = False
    resolved_at: Optional[datetime] = None

    @property
    def resolved(self) -> bool:
        return self.resolved_at is not None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "timestamp": self.timestamp.isoformat(),
            "severity": self.severity.value,
            "type": self.type.value,
            "title": self.title,
            "message": self.message,
            "metadata": self.metadata,
            "acknowledged": self.acknowledged,
            "resolved_at": self.resolved_at.isoformat() if self.resolved_at else None,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Alert":
        return cls(
            id=data["id"],
            timestamp=parse_timestamp(data["timestamp"]),
            severity=AlertSeverity(data["severity"]),
            type=AlertType(data["type"]),
            title=data["title"],
            message=data["message"],
            metadata=data.get("metadata") or {},
            acknowledged=data.get("acknowledged", False),
            resolved_at=parse_timestamp(data.get("resolved_at")),
        )


@dataclass
class EscalationCounter:
    count: int
    first_seen: datetime
    tier: int = 0


class AlertHistory:
    """Bounded alert history; the oldest alerts are trimmed past max_history."""

    def __init__(self, max_history: int = 10000):
        self._alerts: List[Alert] = []
        self._alerts_by_id: Dict[str, Alert] = {}
        self._max_history = max_history
        self.evicted = 0

    def __len__(self) -> int:
        return len(self._alerts)

    def add(self, alert: Alert) -> None:
        self._alerts.append(alert)
        self._alerts_by_id[alert.id] = alert

        if len(self._alerts) > self._max_history:
            removed = self._alerts[:-self._max_history]
            self._alerts = self._alerts[-self._max_history:]
            for old in removed:
                self._alerts_by_id.pop(old.id, None)
            self.evicted += len(removed)
            logger.debug("Trimmed %d alerts from history", len(removed))

    def get(self, alert_id: str) -> Optional[Alert]:
        return self._alerts_by_id.get(alert_id)

    def newest_first(self) -> List[Alert]:
        return self._alerts[::-1]

    def since(self, when: datetime) -> List[Alert]:
        return [a for a in self._alerts if a.timestamp >= when]


class AlertSystem:
    """Creates, throttles, escalates and routes alerts."""

    def __init__(
        self,
        config: Optional[AlertConfig] = None,
        channels: Optional[List[AlertChannel]] = None,
        session_maker: Optional[async_sessionmaker[AsyncSession]] = None,
        clock: Clock = utc_now,
    ):
        self.config = config or AlertConfig()
        self.clock = clock
        self.default_severity = AlertSeverity(self.config.default_severity)
        self.escalation_rules: List[EscalationRule] = list(self.config.escalation_rules)

        self.session_maker = session_maker
        if channels is None:
            channels = [create_channel(c, session_maker) for c in self.config.channels]
        self.channels: List[AlertChannel] = list(channels)

        self.history = AlertHistory(self.config.max_history)
        self._throttle: Dict[str, datetime] = {}
        self._escalation: Dict[str, EscalationCounter] = {}
        self._dispatch_times: Deque[datetime] = deque()

        self.suppressed_count = 0
        self.channel_failures: Dict[str, int] = {}
        self._sweeper = PeriodicTask(
            "alert-throttle-sweep",
            self.config.sweep_interval_seconds,
            self._sweep_tick,
            on_error=self.trigger_system_error,
        )

    @property
    def throttle_window(self) -> timedelta:
        return timedelta(minutes=self.config.throttle_window_minutes)

    @property
    def evicted_alerts(self) -> int:
        return self.history.evicted

    # =========================================================================
    # Generation paths
    # =========================================================================

    async def trigger_deprecated_element_access(self, event: AccessEvent) -> Optional[Alert]:
        """Alert on any touch of a deprecated element."""
        return await self._dispatch(
            key=f"deprecated_access_{event.element_type}_{event.element_name}",
            severity=self.default_severity,
            alert_type=AlertType.DEPRECATED_ELEMENT_ACCESS,
            title=f"Deprecated {event.element_type} accessed: {event.element_name}",
            message=(
                f"{event.query_type.value} on deprecated {event.element_type} '{event.element_name}' "
                f"from {event.source.type.value}:{event.source.identifier}"
            ),
            metadata={
                "element_name": event.element_name,
                "element_type": event.element_type,
                "query_type": event.query_type.value,
                "source": event.source.to_dict(),
                "event_id": event.id,
            },
        )

    async def trigger_threshold_alert(
        self,
        element_key: str,
        access_count: int,
        threshold: int,
        window_minutes: int,
    ) -> Optional[Alert]:
        return await self._dispatch(
            key=f"threshold_{element_key}",
            severity=AlertSeverity.ERROR,
            alert_type=AlertType.THRESHOLD_EXCEEDED,
            title=f"Access threshold exceeded: {element_key}",
            message=(
                f"{access_count} accesses in the last {window_minutes} minutes "
                f"(threshold {threshold})"
            ),
            metadata={
                "element_key": element_key,
                "access_count": access_count,
                "threshold": threshold,
                "window_minutes": window_minutes,
            },
        )

    async def trigger_usage_spike(
        self,
        element_name: str,
        current_count: int,
        baseline: float,
    ) -> Optional[Alert]:
        ratio = current_count / baseline if baseline else None
        return await self._dispatch(
            key=f"spike_{element_name}",
            severity=AlertSeverity.WARNING,
            alert_type=AlertType.USAGE_SPIKE,
            title=f"Usage spike on deprecated element: {element_name}",
            message=(
                f"{current_count} accesses in the last hour against a baseline of {baseline:.1f}/hour"
            ),
            metadata={
                "element_name": element_name,
                "current_count": current_count,
                "baseline": baseline,
                "ratio": ratio,
            },
        )

    async def trigger_system_error(self, error: BaseException, context: str) -> Optional[Alert]:
        return await self._dispatch(
            key=f"system_error_{context}",
            severity=AlertSeverity.CRITICAL,
            alert_type=AlertType.SYSTEM_ERROR,
            title=f"System error in {context}",
            message=f"{type(error).__name__}: {error}",
            metadata={"context": context, "error_type": type(error).__name__},
        )

    # =========================================================================
    # Throttling & Escalation
    # =========================================================================

    def is_throttled(self, key: str, now: Optional[datetime] = None) -> bool:
        now = now or self.clock()
        last = self._throttle.get(key)
        return last is not None and now - last < self.throttle_window

    def _escalate(
        self, key: str, severity: AlertSeverity, now: datetime
    ) -> Tuple[AlertSeverity, Optional[EscalationRule], Optional[EscalationCounter]]:
        """Severity for this fire plus the counter state to store once the alert is sent."""
        if not self.escalation_rules:
            return severity, None, None

        longest = max(timedelta(minutes=r.time_window_minutes) for r in self.escalation_rules)
        current = self._escalation.get(key)
        if current is None or now - current.first_seen > longest:
            counter = EscalationCounter(count=0, first_seen=now)
        else:
            counter = replace(current)

        counter.count += 1

        for index in range(counter.tier, len(self.escalation_rules)):
            rule = self.escalation_rules[index]
            window = timedelta(minutes=rule.time_window_minutes)
            if counter.count >= rule.trigger_count and now - counter.first_seen <= window:
                target = AlertSeverity(rule.escalate_to)
                counter.count = 0
                counter.first_seen = now
                counter.tier = min(index + 1, len(self.escalation_rules) - 1)
                if target.rank > severity.rank:
                    return target, rule, counter
                return severity, rule, counter

        return severity, None, counter

    def escalation_state(self, key: str) -> Optional[EscalationCounter]:
        return self._escalation.get(key)

    def _hourly_cap_reached(self, now: datetime) -> bool:
        cutoff = now - timedelta(hours=1)
        while self._dispatch_times and self._dispatch_times[0] < cutoff:
            self._dispatch_times.popleft()
        return len(self._dispatch_times) >= self.config.max_alerts_per_hour

    def sweep_throttle_map(self) -> int:
        """Evict throttle entries and escalation counters that have gone stale."""
        now = self.clock()
        stale = [k for k, last in self._throttle.items() if now - last >= self.throttle_window]
        for key in stale:
            del self._throttle[key]

        if self.escalation_rules:
            longest = max(timedelta(minutes=r.time_window_minutes) for r in self.escalation_rules)
            for key in [k for k, c in self._escalation.items() if now - c.first_seen > longest]:
                del self._escalation[key]

        return len(stale)

    async def _sweep_tick(self) -> None:
        removed = self.sweep_throttle_map()
        if removed:
            logger.debug("Swept %d throttle entries", removed)

    # =========================================================================
    # Dispatch
    # =========================================================================

    async def _dispatch(
        self,
        key: str,
        severity: AlertSeverity,
        alert_type: AlertType,
        title: str,
        message: str,
        metadata: Dict[str, Any],
    ) -> Optional[Alert]:
        now = self.clock()
        if self.is_throttled(key, now):
            self.suppressed_count += 1
            logger.debug("Alert %s throttled", key)
            return None

        final_severity, rule, counter = self._escalate(key, severity, now)
        metadata = dict(metadata, throttle_key=key)
        if final_severity != severity:
            metadata.update({
                "escalated_from": severity.value,
                "original_type": alert_type.value,
                "escalation_rule": rule.to_dict(),
            })
            alert_type = AlertType.ESCALATION

        if final_severity != AlertSeverity.CRITICAL and self._hourly_cap_reached(now):
            self.suppressed_count += 1
            logger.warning("Hourly alert cap of %d reached; suppressed %s", self.config.max_alerts_per_hour, key)
            return None

        if counter is not None:
            self._escalation[key] = counter
        self._throttle[key] = now
        self._dispatch_times.append(now)

        alert = Alert(
            id=f"alert_{now.strftime('%Y%m%d%H%M%S')}_{secrets.token_hex(4)}",
            timestamp=now,
            severity=final_severity,
            type=alert_type,
            title=title,
            message=message,
            metadata=metadata,
        )
        self.history.add(alert)
        await self._deliver(alert)
        return alert

    async def _safe_send(self, channel: AlertChannel, alert: Alert) -> bool:
        try:
            await channel.send(alert)
            return True
        except Exception:
            self.channel_failures[channel.name] = self.channel_failures.get(channel.name, 0) + 1
            logger.exception("Alert channel %s failed to send %s", channel.name, alert.id)
            return False

    async def _deliver(self, alert: Alert) -> None:
        targets = [c for c in self.channels if c.accepts(alert)]
        if targets:
            await asyncio.gather(*(self._safe_send(c, alert) for c in targets))

    async def _notify_update(self, alert: Alert) -> None:
        for channel in self.channels:
            try:
                await channel.update(alert)
            except Exception:
                logger.exception("Alert channel %s failed to update %s", channel.name, alert.id)

    # =========================================================================
    # History
    # =========================================================================

    async def acknowledge_alert(self, alert_id: str, acknowledged_by: str = "system") -> bool:
        alert = self.history.get(alert_id)
        if alert is None:
            return False
        if alert.acknowledged:
            return True
        alert.acknowledged = True
        alert.metadata["acknowledged_by"] = acknowledged_by
        alert.metadata["acknowledged_at"] = self.clock().isoformat()
        await self._notify_update(alert)
        return True

    async def resolve_alert(self, alert_id: str, resolved_by: str = "system", resolution: Optional[str] = None) -> bool:
        alert = self.history.get(alert_id)
        if alert is None:
            return False
        if alert.resolved:
            return True
        alert.resolved_at = self.clock()
        alert.metadata["resolved_by"] = resolved_by
        if resolution:
            alert.metadata["resolution"] = resolution
        await self._notify_update(alert)
        return True

    async def load_persisted(self, limit: Optional[int] = None) -> int:
        """Load alerts stored by a database channel into the history."""
        if self.session_maker is None:
            return 0
        limit = min(limit or self.config.max_history, self.config.max_history)
        async with self.session_maker() as session:
            result = await session.execute(
                select(AlertRecordModel).order_by(AlertRecordModel.timestamp.desc()).limit(limit)
            )
            records = result.scalars().all()

        count = 0
        for record in reversed(records):
            if self.history.get(record.id) is not None:
                continue
            self.history.add(Alert(
                id=record.id,
                timestamp=ensure_aware(record.timestamp),
                severity=AlertSeverity(record.severity),
                type=AlertType(record.type),
                title=record.title,
                message=record.message,
                metadata=dict(record.meta or {}),
                acknowledged=bool(record.acknowledged),
                resolved_at=ensure_aware(record.resolved_at) if record.resolved_at else None,
            ))
            count += 1
        return count

    def get_alert_history(
        self,
        limit: int = 100,
        severity: Optional[AlertSeverity] = None,
        alert_type: Optional[AlertType] = None,
    ) -> List[Alert]:
        """Newest first, optionally filtered."""
        alerts = self.history.newest_first()
        if severity is not None:
            alerts = [a for a in alerts if a.severity == severity]
        if alert_type is not None:
            alerts = [a for a in alerts if a.type == alert_type]
        return alerts[:limit]

    def get_alert_stats(self, hours: int = 24) -> Dict[str, Any]:
        recent = self.history.since(self.clock() - timedelta(hours=hours))
        by_severity = {s.value: 0 for s in AlertSeverity}
        by_type: Dict[str, int] = {}
        for alert in recent:
            by_severity[alert.severity.value] += 1
            by_type[alert.type.value] = by_type.get(alert.type.value, 0) + 1
        return {
            "hours": hours,
            "total": len(recent),
            "by_severity": by_severity,
            "by_type": by_type,
            "acknowledged": sum(1 for a in recent if a.acknowledged),
            "resolved": sum(1 for a in recent if a.resolved),
            "suppressed": self.suppressed_count,
            "evicted": self.evicted_alerts,
            "channel_failures": dict(self.channel_failures),
        }

    # =========================================================================
    # Channels & Lifecycle
    # =========================================================================

    def add_channel(self, channel: AlertChannel) -> None:
        self.channels = [c for c in self.channels if c.name != channel.name] + [channel]

    def remove_channel(self, name: str) -> bool:
        before = len(self.channels)
        self.channels = [c for c in self.channels if c.name != name]
        return len(self.channels) < before

    async def test_alerts(self) -> Dict[str, bool]:
        """Send a test alert straight to every channel, bypassing filters."""
        now = self.clock()
        alert = Alert(
            id=f"alert_test_{secrets.token_hex(4)}",
            timestamp=now,
            severity=AlertSeverity.INFO,
            type=AlertType.SYSTEM_ERROR,
            title="Test alert",
            message="Alert channel connectivity test",
            metadata={"test": True},
        )
        results = await asyncio.gather(*(self._safe_send(c, alert) for c in self.channels))
        return {c.name: ok for c, ok in zip(self.channels, results)}

    def start(self) -> None:
        self._sweeper.start()

    async def stop(self) -> None:
        await self._sweeper.stop()
        for channel in self.channels:
            await channel.close()


class AlertPresets:
    """Ready-made alert configurations."""

    @staticmethod
    def development() -> AlertConfig:
        return AlertConfig(
            channels=[ChannelConfig(type="console")],
            default_severity="info",
            throttle_window_minutes=1,
            max_alerts_per_hour=200,
        )

    @staticmethod
    def production(
        webhook_url: Optional[str] = None,
        slack_webhook_url: Optional[str] = None,
        email_recipients: Optional[List[str]] = None,
        smtp_host: str = "localhost",
    ) -> AlertConfig:
        channels = [
            ChannelConfig(type="console", severity_filter=["warning", "error", "critical"]),
            ChannelConfig(type="database"),
        ]
        if webhook_url:
            channels.append(ChannelConfig(
                type="webhook",
                severity_filter=["error", "critical"],
                settings={"url": webhook_url},
            ))
        if slack_webhook_url:
            channels.append(ChannelConfig(
                type="slack",
                severity_filter=["warning", "error", "critical"],
                settings={"url": slack_webhook_url},
            ))
        if email_recipients:
            channels.append(ChannelConfig(
                type="email",
                severity_filter=["critical"],
                settings={"recipients": email_recipients, "smtp_host": smtp_host},
            ))
        return AlertConfig(
            channels=channels,
            default_severity="warning",
            throttle_window_minutes=15,
            max_alerts_per_hour=30,
        )

    @staticmethod
    def testing() -> AlertConfig:
        return AlertConfig(
            channels=[],
            default_severity="warning",
            throttle_window_minutes=0,
            max_alerts_per_hour=10000,
        )
