"""
Deprecated-Element Monitor
==========================

Runtime core of the subsystem. Tracks which deprecated elements are under
observation, buffers access events, flushes them to the telemetry
collector and drives the alert system.

Per element:  unmonitored -> monitoring -> (removal candidate | unmonitored)

Flush protocol:
    Every flush_interval_seconds, or as soon as the buffer reaches
    batch_size, the whole buffer is handed to telemetry in one call. On
    failure the batch is put back in front of the buffer so the next
    cycle retries it before anything newer. Telemetry skips event ids it
    already holds, so a retry never double-counts.

Usage:
    monitor = DeprecatedMonitor(telemetry, alerts, config.monitoring)
    monitor.start_monitoring(element)
    await monitor.record_access("orders_legacy_deprecated_20240115", "table",
                                query_type=QueryType.SELECT)
    stats = monitor.get_element_stats("orders_legacy_deprecated_20240115")
"""

import asyncio
import logging
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Set

from dbretire.alerts import AlertSystem
from dbretire.clock import Clock, utc_now
from dbretire.config import MonitoringConfig
from dbretire.elements import DeprecatedElement
from dbretire.events import AccessEvent, AccessSource, QueryType
from dbretire.tasks import PeriodicTask
from dbretire.telemetry import ElementUsage, TelemetryCollector

logger = logging.getLogger(__name__)


# =============================================================================
# Views
# =============================================================================

@dataclass
class AccessFrequency:
    """Chronological histograms; the last bucket is the current period."""
    daily: List[int] = field(default_factory=lambda: [0] * 30)
    weekly: List[int] = field(default_factory=lambda: [0] * 4)
    monthly: List[int] = field(default_factory=lambda: [0] * 12)

    def to_dict(self) -> dict:
        return {"daily": self.daily, "weekly": self.weekly, "monthly": self.monthly}


@dataclass
class MonitoringStats:
    element_name: str
    element_type: str
    total_access: int = 0
    last_accessed: Optional[datetime] = None
    access_frequency: AccessFrequency = field(default_factory=AccessFrequency)
    sources: Dict[str, int] = field(default_factory=dict)
    query_types: Dict[str, int] = field(default_factory=dict)
    average_execution_time: Optional[float] = None
    peak_access_hour: Optional[int] = None

    def to_dict(self) -> dict:
        return {
            "element_name": self.element_name,
            "element_type": self.element_type,
            "total_access": self.total_access,
            "last_accessed": self.last_accessed.isoformat() if self.last_accessed else None,
            "access_frequency": self.access_frequency.to_dict(),
            "sources": self.sources,
            "query_types": self.query_types,
            "average_execution_time": self.average_execution_time,
            "peak_access_hour": self.peak_access_hour,
        }


@dataclass
class ElementStatus:
    element_name: str
    element_type: str
    original_name: str
    access_count: int
    last_accessed: Optional[datetime]
    status: str  # safe, warning, active

    def to_dict(self) -> dict:
        return {
            "element_name": self.element_name,
            "element_type": self.element_type,
            "original_name": self.original_name,
            "access_count": self.access_count,
            "last_accessed": self.last_accessed.isoformat() if self.last_accessed else None,
            "status": self.status,
        }


@dataclass
class DashboardData:
    overview: Dict[str, int]
    elements: List[ElementStatus]
    trends: Dict[str, Any]

    def to_dict(self) -> dict:
        return {
            "overview": self.overview,
            "elements": [e.to_dict() for e in self.elements],
            "trends": self.trends,
        }


# =============================================================================
# Monitor
# =============================================================================

class DeprecatedMonitor:
    """Observes deprecated elements and reports their usage."""

    def __init__(
        self,
        telemetry: TelemetryCollector,
        alerts: AlertSystem,
        config: Optional[MonitoringConfig] = None,
        clock: Clock = utc_now,
    ):
        self.telemetry = telemetry
        self.alerts = alerts
        self.config = config or MonitoringConfig()
        self.clock = clock

        self._registry: Dict[str, DeprecatedElement] = {}
        self._buffer: List[AccessEvent] = []
        self._pending: Set[asyncio.Task] = set()

        self.flushed_events = 0
        self.flush_failures = 0
        self._flusher = PeriodicTask(
            "monitor-flush",
            self.config.flush_interval_seconds,
            self._flush_tick,
            on_error=alerts.trigger_system_error,
        )

    # =========================================================================
    # Registry
    # =========================================================================

    def start_monitoring(self, element: DeprecatedElement) -> bool:
        """Register an element; returns False if it was already monitored."""
        if element.monitor_key in self._registry:
            return False
        self._registry[element.monitor_key] = element
        logger.info("Monitoring %s", element.monitor_key)
        return True

    def stop_monitoring(self, element: DeprecatedElement) -> bool:
        """Unregister an element; returns False if it was not monitored."""
        if self._registry.pop(element.monitor_key, None) is None:
            return False
        logger.info("Stopped monitoring %s", element.monitor_key)
        return True

    def monitored_elements(self) -> List[DeprecatedElement]:
        return list(self._registry.values())

    def is_monitored(self, name: str) -> bool:
        return self.find_element(name) is not None

    def find_elements(self, name: str, element_type: Optional[str] = None) -> List[DeprecatedElement]:
        """
        Every element a name can refer to.

        A qualified deprecated name or an original name is exact. A bare
        column or index name may belong to several tables, in which case all
        of them are returned.
        """
        lowered = name.lower()
        exact, unqualified = [], []
        for element in self._registry.values():
            if element_type and element.element_type.value != element_type:
                continue
            if lowered in (element.deprecated_name.lower(), element.original_name.lower()):
                exact.append(element)
            elif lowered == element.deprecated_object_name.lower():
                unqualified.append(element)
        return exact or unqualified

    def find_element(self, name: str, element_type: Optional[str] = None) -> Optional[DeprecatedElement]:
        """Look an element up by deprecated name (qualified or not) or original name."""
        found = self.find_elements(name, element_type)
        return found[0] if found else None

    @property
    def buffered_events(self) -> int:
        return len(self._buffer)

    # =========================================================================
    # Recording
    # =========================================================================

    def _enqueue(
        self,
        element_name: str,
        element_type: Optional[str],
        source: Optional[AccessSource],
        query_type: QueryType,
        execution_time_ms: Optional[float],
        metadata: Optional[Dict[str, Any]],
    ) -> List[AccessEvent]:
        if not self.config.enabled:
            return []
        elements = self.find_elements(element_name, element_type)
        if not elements:
            logger.debug("Ignoring access to unmonitored element %s", element_name)
            return []
        if len(elements) > 1:
            logger.debug("Ambiguous name %s; crediting %d elements", element_name, len(elements))

        now = self.clock()
        events = [
            AccessEvent(
                element_name=element.deprecated_name,
                element_type=element.element_type.value,
                timestamp=now,
                source=source or AccessSource(),
                query_type=query_type,
                execution_time_ms=execution_time_ms if self.config.track_performance else None,
                metadata=dict(metadata or {}),
            )
            for element in elements
        ]
        self._buffer.extend(events)
        return events

    async def _after_enqueue(self, events: List[AccessEvent]) -> None:
        if self.config.alert_on_access:
            for event in events:
                try:
                    await self.alerts.trigger_deprecated_element_access(event)
                except Exception:
                    logger.exception("Access alert failed for %s", event.element_name)
        if len(self._buffer) >= self.config.batch_size:
            await self.flush()

    async def record_access(
        self,
        element_name: str,
        element_type: Optional[str] = None,
        source: Optional[AccessSource] = None,
        query_type: QueryType = QueryType.OTHER,
        execution_time_ms: Optional[float] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Optional[AccessEvent]:
        """
        Record one access; returns None for elements that are not monitored.

        A bare column name shared by several monitored tables is credited to
        each of them and the first event is returned.
        """
        events = self._enqueue(element_name, element_type, source, query_type, execution_time_ms, metadata)
        if not events:
            return None
        await self._after_enqueue(events)
        return events[0]

    def record_access_nowait(
        self,
        element_name: str,
        element_type: Optional[str] = None,
        source: Optional[AccessSource] = None,
        query_type: QueryType = QueryType.OTHER,
        execution_time_ms: Optional[float] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Optional[AccessEvent]:
        """Buffer the event now and schedule alerting and flushing in the background."""
        events = self._enqueue(element_name, element_type, source, query_type, execution_time_ms, metadata)
        if not events:
            return None
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No loop: the events wait in the buffer for the next flush
            return events[0]
        task = loop.create_task(self._after_enqueue(events))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return events[0]

    # =========================================================================
    # Flushing
    # =========================================================================

    async def flush(self) -> bool:
        """Hand the buffered batch to telemetry; requeue it on failure."""
        if not self._buffer:
            return True

        batch, self._buffer = self._buffer, []
        try:
            await self.telemetry.record_access_events(batch)
        except Exception as e:
            self._buffer = batch + self._buffer
            self.flush_failures += 1
            logger.error("Flush of %d events failed, requeued: %s", len(batch), e)
            return False

        self.flushed_events += len(batch)
        try:
            await self._check_thresholds(batch)
        except Exception as e:
            logger.exception("Threshold check failed")
            await self.alerts.trigger_system_error(e, "monitor-thresholds")
        return True

    async def _flush_tick(self) -> None:
        await self.flush()

    async def _check_thresholds(self, batch: List[AccessEvent]) -> None:
        now = self.clock()
        threshold = self.config.alert_thresholds.get("access_count", 5)
        window_minutes = self.config.alert_thresholds.get("time_window_minutes", 60)

        for name in dict.fromkeys(e.element_name for e in batch):
            element = self.find_element(name)
            if element is None:
                continue
            events = self._events_for(name, since=now - timedelta(days=7))

            in_window = sum(1 for e in events if e.timestamp >= now - timedelta(minutes=window_minutes))
            if in_window >= threshold:
                await self.alerts.trigger_threshold_alert(element.monitor_key, in_window, threshold, window_minutes)

            hour_ago = now - timedelta(hours=1)
            last_hour = sum(1 for e in events if e.timestamp >= hour_ago)
            baseline = (len(events) - last_hour) / (7 * 24 - 1)
            if last_hour >= self.config.spike_min_count and (
                baseline == 0 or last_hour / baseline >= self.config.spike_ratio
            ):
                await self.alerts.trigger_usage_spike(name, last_hour, baseline)

    # =========================================================================
    # Views
    # =========================================================================

    def _events_for(self, element_name: Optional[str], since: Optional[datetime] = None) -> List[AccessEvent]:
        """Stored plus still-buffered events, without duplicates."""
        events = self.telemetry.get_events(element_name=element_name, since=since)
        seen = {e.id for e in events}
        for event in self._buffer:
            if event.id in seen:
                continue
            if element_name is not None and event.element_name != element_name:
                continue
            if since is not None and event.timestamp < since:
                continue
            events.append(event)
        return events

    def get_element_stats(self, name: str) -> Optional[MonitoringStats]:
        """Stats over the lookback window, computed on demand."""
        element = self.find_element(name)
        if element is None:
            return None

        now = self.clock()
        lookback = timedelta(days=self.config.stats_lookback_days)
        events = self._events_for(element.deprecated_name, since=now - lookback)
        stats = MonitoringStats(
            element_name=element.deprecated_name,
            element_type=element.element_type.value,
            total_access=len(events),
        )
        if not events:
            return stats

        stats.last_accessed = max(e.timestamp for e in events)

        freq = stats.access_frequency
        for event in events:
            days_ago = max(0, (now - event.timestamp).days)
            if days_ago < 30:
                freq.daily[29 - days_ago] += 1
            if days_ago < 28:
                freq.weekly[3 - days_ago // 7] += 1
            if days_ago < 360:
                freq.monthly[11 - days_ago // 30] += 1

        stats.sources = dict(Counter(e.source.key for e in events))
        stats.query_types = dict(Counter(e.query_type.value for e in events))
        timings = [e.execution_time_ms for e in events if e.execution_time_ms is not None]
        if timings:
            stats.average_execution_time = sum(timings) / len(timings)
        stats.peak_access_hour = Counter(e.timestamp.hour for e in events).most_common(1)[0][0]
        return stats

    def get_all_stats(self) -> Dict[str, MonitoringStats]:
        return {
            key: self.get_element_stats(element.deprecated_name)
            for key, element in self._registry.items()
        }

    def lifetime_usage(self, element: DeprecatedElement) -> ElementUsage:
        """Every access ever seen, including events the telemetry buffer has evicted."""
        usage = self.telemetry.element_usage(element.deprecated_name)
        for event in self._buffer:
            if event.element_name == element.deprecated_name:
                usage.add(event.timestamp)
        return usage

    def last_accessed(self, element: DeprecatedElement) -> Optional[datetime]:
        return self.lifetime_usage(element).last_accessed

    def get_removal_candidates(self, days_since_last_access: int = 30) -> List[DeprecatedElement]:
        """Elements with no access at all, or none since the cutoff."""
        cutoff = self.clock() - timedelta(days=days_since_last_access)
        candidates = []
        for element in self._registry.values():
            last = self.last_accessed(element)
            if last is None or last < cutoff:
                candidates.append(element)
        return candidates

    def get_recent_activity(self, seconds: int = 60) -> List[AccessEvent]:
        since = self.clock() - timedelta(seconds=seconds)
        events = self._events_for(None, since=since)
        return sorted(events, key=lambda e: e.timestamp, reverse=True)

    def get_dashboard_data(self) -> DashboardData:
        now = self.clock()
        lookback_days = self.config.stats_lookback_days
        candidates = {e.monitor_key for e in self.get_removal_candidates(lookback_days)}

        statuses = []
        daily = [0] * 30
        sources: Counter = Counter()
        query_types: Counter = Counter()
        total_access = 0

        for key, element in self._registry.items():
            stats = self.get_element_stats(element.deprecated_name)
            usage = self.lifetime_usage(element)
            if usage.count == 0:
                status = "safe"
            elif key in candidates:
                status = "warning"
            else:
                status = "active"

            statuses.append(ElementStatus(
                element_name=element.deprecated_name,
                element_type=element.element_type.value,
                original_name=element.original_name,
                access_count=stats.total_access,
                last_accessed=usage.last_accessed,
                status=status,
            ))
            total_access += stats.total_access
            daily = [a + b for a, b in zip(daily, stats.access_frequency.daily)]
            sources.update(stats.sources)
            query_types.update(stats.query_types)

        return DashboardData(
            overview={
                "total_monitored": len(self._registry),
                "total_access": total_access,
                "recent_alerts": self.alerts.get_alert_stats(24)["total"],
                "removal_candidates": len(candidates),
            },
            elements=statuses,
            trends={
                "generated_at": now.isoformat(),
                "daily_access": daily,
                "top_sources": [{"source": s, "count": c} for s, c in sources.most_common(10)],
                "query_types": dict(query_types),
            },
        )

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def start(self) -> None:
        if self.config.enabled:
            self._flusher.start()

    async def stop(self) -> None:
        """Stop the flush task, finish pending work and flush what is left."""
        await self._flusher.stop()
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
        if not await self.flush():
            logger.warning("Final flush failed; %d events remain buffered", len(self._buffer))
