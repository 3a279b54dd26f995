"""
Telemetry Collector
===================

Store of raw access events with periodic aggregation, trend analysis and
export.

Ingestion is idempotent by event id: the monitor may hand the same batch
over again after a failed flush, and events already stored are skipped.
New events are persisted first and only then added to the in-memory ring
buffer, so a failed persist leaves nothing half-ingested.

Storage backends:
- memory:   ring buffer only
- file:     JSON lines in {storage_path}/events.jsonl
- database: the access_events table in the state database

Usage:
    telemetry = TelemetryCollector(TelemetryConfig(storage_type="file"))
    await telemetry.record_access_events(events)
    trends = telemetry.analyze_trends(days=30)
"""

import csv
import json
import logging
import math
from collections import Counter, deque
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from pathlib import Path
from typing import Any, Deque, Dict, Iterable, List, Optional, Sequence, Set

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from dbretire.clock import Clock, ensure_aware, parse_timestamp, utc_now
from dbretire.config import TelemetryConfig
from dbretire.db.models import AccessEventModel
from dbretire.events import AccessEvent, AccessSource, QueryType
from dbretire.tasks import ErrorReporter, PeriodicTask

logger = logging.getLogger(__name__)

TREND_THRESHOLD = 0.1
EVENTS_FILENAME = "events.jsonl"


# =============================================================================
# Data Types
# =============================================================================

@dataclass
class ElementUsage:
    """Running tally per element; survives ring-buffer eviction."""
    count: int = 0
    last_accessed: Optional[datetime] = None

    def add(self, when: datetime) -> None:
        self.count += 1
        if self.last_accessed is None or when > self.last_accessed:
            self.last_accessed = when


@dataclass
class TelemetryMetrics:
    """Aggregated snapshot over one window."""
    timestamp: datetime
    period_start: datetime
    period_end: datetime
    total_events: int = 0
    unique_elements: int = 0
    top_accessed_elements: List[Dict[str, Any]] = field(default_factory=list)
    access_by_type: Dict[str, int] = field(default_factory=dict)
    access_by_source: Dict[str, int] = field(default_factory=dict)
    error_rate: float = 0.0
    average_response_time: Optional[float] = None

    def to_dict(self) -> dict:
        return {
            "timestamp": self.timestamp.isoformat(),
            "period_start": self.period_start.isoformat(),
            "period_end": self.period_end.isoformat(),
            "total_events": self.total_events,
            "unique_elements": self.unique_elements,
            "top_accessed_elements": self.top_accessed_elements,
            "access_by_type": self.access_by_type,
            "access_by_source": self.access_by_source,
            "error_rate": self.error_rate,
            "average_response_time": self.average_response_time,
        }


@dataclass
class ElementTrend:
    element_name: str
    daily_counts: List[int]
    slope: float
    trend: str
    total: int
    risk_level: str

    def to_dict(self) -> dict:
        return {
            "element_name": self.element_name,
            "daily_counts": self.daily_counts,
            "slope": round(self.slope, 4),
            "trend": self.trend,
            "total": self.total,
            "risk_level": self.risk_level,
        }


@dataclass
class TrendAnalysis:
    period_days: int
    overall_trend: str
    overall_slope: float
    elements: Dict[str, ElementTrend] = field(default_factory=dict)
    risk_elements: List[str] = field(default_factory=list)
    recommendations: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "period_days": self.period_days,
            "overall_trend": self.overall_trend,
            "overall_slope": round(self.overall_slope, 4),
            "elements": {k: v.to_dict() for k, v in self.elements.items()},
            "risk_elements": self.risk_elements,
            "recommendations": self.recommendations,
        }


@dataclass
class TelemetryExport:
    metadata: Dict[str, Any]
    events: List[Dict[str, Any]]
    metrics: List[Dict[str, Any]]
    summary: Dict[str, Any]
    files: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "metadata": self.metadata,
            "events": self.events,
            "metrics": self.metrics,
            "summary": self.summary,
        }


# =============================================================================
# Trend Math
# =============================================================================

def linear_slope(values: Sequence[float]) -> float:
    """Least-squares slope of values against x = 1..n."""
    n = len(values)
    if n < 2:
        return 0.0
    xs = range(1, n + 1)
    sum_x = sum(xs)
    sum_y = sum(values)
    sum_xy = sum(x * y for x, y in zip(xs, values))
    sum_xx = sum(x * x for x in xs)
    denominator = n * sum_xx - sum_x * sum_x
    if denominator == 0:
        return 0.0
    return (n * sum_xy - sum_x * sum_y) / denominator


def classify_trend(values: Sequence[float], threshold: float = TREND_THRESHOLD) -> str:
    """increasing, decreasing or stable."""
    if len(values) < 2:
        return "stable"
    slope = linear_slope(values)
    if abs(slope) < threshold:
        return "stable"
    return "increasing" if slope > 0 else "decreasing"


def risk_for_count(count: int) -> str:
    if count > 100:
        return "high"
    if count > 10:
        return "medium"
    return "low"


def _daily_series(days: Iterable[date], start: date, end: date) -> List[int]:
    counts = Counter(days)
    span = (end - start).days + 1
    return [counts.get(start + timedelta(days=i), 0) for i in range(span)]


# =============================================================================
# Collector
# =============================================================================

class TelemetryCollector:
    """Bounded event store with aggregation, trends and export."""

    def __init__(
        self,
        config: Optional[TelemetryConfig] = None,
        session_maker: Optional[async_sessionmaker[AsyncSession]] = None,
        clock: Clock = utc_now,
        on_error: Optional[ErrorReporter] = None,
    ):
        self.config = config or TelemetryConfig()
        self.session_maker = session_maker
        self.clock = clock

        if self.config.storage_type == "database" and session_maker is None:
            raise ValueError("database telemetry storage requires an initialized state database")

        self._events: Deque[AccessEvent] = deque()
        self._event_ids: Set[str] = set()
        self._usage: Dict[str, ElementUsage] = {}
        max_metrics = math.ceil(
            self.config.retention_days * 1440 / self.config.aggregation_interval_minutes
        )
        self._metrics: Deque[TelemetryMetrics] = deque(maxlen=max_metrics)
        self.evicted_events = 0
        self.duplicate_events = 0

        self._aggregator = PeriodicTask(
            "telemetry-aggregation",
            self.config.aggregation_interval_minutes * 60,
            self._aggregate_tick,
            on_error=on_error,
        )

    @property
    def storage_file(self) -> Path:
        return Path(self.config.storage_path) / EVENTS_FILENAME

    @property
    def event_count(self) -> int:
        return len(self._events)

    # =========================================================================
    # Ingestion & Storage
    # =========================================================================

    async def record_access_events(self, events: Sequence[AccessEvent]) -> int:
        """Ingest a batch; returns how many events were new."""
        if not self.config.enabled or not events:
            return 0

        fresh = []
        batch_ids = set()
        for event in events:
            if event.id in self._event_ids or event.id in batch_ids:
                self.duplicate_events += 1
                continue
            batch_ids.add(event.id)
            fresh.append(event)

        if not fresh:
            return 0

        await self._persist(fresh)
        for event in fresh:
            self._append(event)

        logger.debug("Ingested %d access events", len(fresh))
        return len(fresh)

    def _append(self, event: AccessEvent) -> None:
        if len(self._events) >= self.config.max_event_buffer_size:
            evicted = self._events.popleft()
            self._event_ids.discard(evicted.id)
            self.evicted_events += 1
            logger.debug("Event buffer full; evicted %s", evicted.id)
        self._events.append(event)
        self._event_ids.add(event.id)
        self._usage.setdefault(event.element_name, ElementUsage()).add(event.timestamp)

    def element_usage(self, element_name: str) -> ElementUsage:
        """Lifetime count and last access of one element, including evicted events."""
        usage = self._usage.get(element_name)
        return ElementUsage(usage.count, usage.last_accessed) if usage else ElementUsage()

    async def _persist(self, events: Sequence[AccessEvent]) -> None:
        if self.config.storage_type == "file":
            self.storage_file.parent.mkdir(parents=True, exist_ok=True)
            payload = "".join(json.dumps(e.to_dict()) + "\n" for e in events)
            with open(self.storage_file, "a", encoding="utf-8") as f:
                f.write(payload)

        elif self.config.storage_type == "database":
            async with self.session_maker() as session:
                session.add_all([_event_to_model(e) for e in events])
                await session.commit()

    async def load_persisted(self) -> int:
        """Reload stored events within retention, e.g. after a restart."""
        cutoff = self.clock() - timedelta(days=self.config.retention_days)
        loaded: List[AccessEvent] = []

        if self.config.storage_type == "file" and self.storage_file.exists():
            with open(self.storage_file, "r", encoding="utf-8") as f:
                for line in f:
                    line = line.strip()
                    if line:
                        loaded.append(AccessEvent.from_dict(json.loads(line)))

        elif self.config.storage_type == "database":
            async with self.session_maker() as session:
                result = await session.execute(
                    select(AccessEventModel)
                    .where(AccessEventModel.timestamp >= cutoff)
                    .order_by(AccessEventModel.timestamp)
                )
                loaded = [_model_to_event(m) for m in result.scalars().all()]

        count = 0
        for event in sorted(loaded, key=lambda e: e.timestamp):
            if event.timestamp >= cutoff and event.id not in self._event_ids:
                self._append(event)
                count += 1
        return count

    def get_events(
        self,
        element_name: Optional[str] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
    ) -> List[AccessEvent]:
        events: Iterable[AccessEvent] = self._events
        if element_name is not None:
            events = (e for e in events if e.element_name == element_name)
        if since is not None:
            events = (e for e in events if e.timestamp >= since)
        if until is not None:
            events = (e for e in events if e.timestamp <= until)
        return list(events)

    # =========================================================================
    # Aggregation
    # =========================================================================

    def compute_metrics(self, events: Sequence[AccessEvent], start: datetime, end: datetime) -> TelemetryMetrics:
        element_counts = Counter(e.element_name for e in events)
        errors = sum(1 for e in events if e.metadata.get("error"))
        timings = [e.execution_time_ms for e in events if e.execution_time_ms is not None]
        return TelemetryMetrics(
            timestamp=self.clock(),
            period_start=start,
            period_end=end,
            total_events=len(events),
            unique_elements=len(element_counts),
            top_accessed_elements=[
                {"element_name": name, "count": count}
                for name, count in element_counts.most_common(10)
            ],
            access_by_type=dict(Counter(e.query_type.value for e in events)),
            access_by_source=dict(Counter(e.source.type.value for e in events)),
            error_rate=errors / len(events) if events else 0.0,
            average_response_time=sum(timings) / len(timings) if timings else None,
        )

    async def aggregate_metrics(self) -> Optional[TelemetryMetrics]:
        """Snapshot the just-elapsed aggregation window."""
        end = self.clock()
        start = end - timedelta(minutes=self.config.aggregation_interval_minutes)
        events = self.get_events(since=start, until=end)
        metrics = self.compute_metrics(events, start, end)
        self._metrics.append(metrics)
        return metrics

    async def _aggregate_tick(self) -> None:
        await self.aggregate_metrics()
        await self.cleanup()

    def get_metrics(self, start: Optional[datetime] = None, end: Optional[datetime] = None) -> List[TelemetryMetrics]:
        return [
            m for m in self._metrics
            if (start is None or m.period_end >= start) and (end is None or m.period_start <= end)
        ]

    def get_current_summary(self) -> Dict[str, Any]:
        now = self.clock()
        last_day = self.get_events(since=now - timedelta(hours=24))
        last_hour = [e for e in last_day if e.timestamp >= now - timedelta(hours=1)]
        return {
            "total_events": len(self._events),
            "events_last_hour": len(last_hour),
            "events_last_24h": len(last_day),
            "unique_elements_24h": len({e.element_name for e in last_day}),
            "metrics_snapshots": len(self._metrics),
            "evicted_events": self.evicted_events,
            "duplicate_events": self.duplicate_events,
            "storage_type": self.config.storage_type,
        }

    # =========================================================================
    # Trends
    # =========================================================================

    def analyze_trends(self, days: int = 30) -> TrendAnalysis:
        """Fit a daily linear trend per element and overall."""
        today = self.clock().date()
        events = self.get_events(since=self.clock() - timedelta(days=days))

        by_element: Dict[str, List[date]] = {}
        for event in events:
            by_element.setdefault(event.element_name, []).append(event.timestamp.date())

        elements: Dict[str, ElementTrend] = {}
        for name, event_days in by_element.items():
            series = _daily_series(event_days, min(event_days), today)
            elements[name] = ElementTrend(
                element_name=name,
                daily_counts=series,
                slope=linear_slope(series),
                trend=classify_trend(series),
                total=len(event_days),
                risk_level=risk_for_count(len(event_days)),
            )

        all_days = [e.timestamp.date() for e in events]
        overall = _daily_series(all_days, min(all_days), today) if all_days else []

        analysis = TrendAnalysis(
            period_days=days,
            overall_trend=classify_trend(overall),
            overall_slope=linear_slope(overall),
            elements=elements,
            risk_elements=sorted(n for n, t in elements.items() if t.trend == "increasing"),
        )
        analysis.recommendations = self._recommendations(analysis)
        return analysis

    def _recommendations(self, analysis: TrendAnalysis) -> List[str]:
        recs = []
        if not analysis.elements:
            recs.append(
                f"No access to deprecated elements in the last {analysis.period_days} days; "
                "they can be reviewed for removal"
            )
            return recs

        if analysis.risk_elements:
            recs.append(
                "Usage is increasing for " + ", ".join(analysis.risk_elements)
                + "; find and migrate the callers before removal"
            )
        high = sorted(n for n, t in analysis.elements.items() if t.risk_level == "high")
        if high:
            recs.append("Heavy access to " + ", ".join(high) + "; consider rolling back the deprecation")
        decreasing = sorted(n for n, t in analysis.elements.items() if t.trend == "decreasing")
        if decreasing:
            recs.append("Usage is falling for " + ", ".join(decreasing) + "; keep monitoring until it reaches zero")
        if analysis.overall_trend == "increasing":
            recs.append("Overall access to deprecated elements is rising; check recent deployments")
        if not recs:
            recs.append("Usage is stable; continue monitoring")
        return recs

    # =========================================================================
    # Export & Cleanup
    # =========================================================================

    def export_telemetry_data(
        self,
        start: datetime,
        end: datetime,
        format: Optional[str] = None,
    ) -> TelemetryExport:
        """Bundle events, metrics and a risk-ranked summary for a range."""
        format = format or self.config.export_format
        events = self.get_events(since=start, until=end)
        metrics = self.get_metrics(start, end)
        period = self.compute_metrics(events, start, end)
        days = max(1, math.ceil((end - start).total_seconds() / 86400))
        trends = self.analyze_trends(days)

        counts = Counter(e.element_name for e in events)
        ranking = [
            {"element_name": name, "count": count, "risk_level": risk_for_count(count)}
            for name, count in counts.most_common()
        ]

        export = TelemetryExport(
            metadata={
                "exported_at": self.clock().isoformat(),
                "start": start.isoformat(),
                "end": end.isoformat(),
                "event_count": len(events),
                "metrics_count": len(metrics),
                "format": format,
            },
            events=[e.to_dict() for e in events],
            metrics=[m.to_dict() for m in metrics],
            summary={
                "period": period.to_dict(),
                "trends": trends.to_dict(),
                "risk_ranking": ranking,
            },
        )

        if self.config.export_directory:
            export.files = self._write_export(export, Path(self.config.export_directory), format)
        return export

    def _write_export(self, export: TelemetryExport, directory: Path, format: str) -> List[str]:
        directory.mkdir(parents=True, exist_ok=True)
        stamp = self.clock().strftime("%Y%m%d%H%M%S")
        written = []

        if format in ("json", "both"):
            path = directory / f"telemetry-export-{stamp}.json"
            with open(path, "w", encoding="utf-8") as f:
                json.dump(export.to_dict(), f, indent=2, default=str)
            written.append(str(path))

        if format in ("csv", "both"):
            path = directory / f"telemetry-events-{stamp}.csv"
            with open(path, "w", newline="", encoding="utf-8") as f:
                writer = csv.writer(f)
                writer.writerow([
                    "id", "timestamp", "element_name", "element_type", "query_type",
                    "source_type", "source_identifier", "execution_time_ms",
                ])
                for event in export.events:
                    writer.writerow([
                        event["id"], event["timestamp"], event["element_name"],
                        event["element_type"], event["query_type"],
                        event["source"]["type"], event["source"]["identifier"],
                        event["execution_time_ms"],
                    ])
            written.append(str(path))

        return written

    async def cleanup(self) -> Dict[str, int]:
        """Purge events and metrics older than the retention period."""
        cutoff = self.clock() - timedelta(days=self.config.retention_days)

        kept = deque(e for e in self._events if e.timestamp >= cutoff)
        removed_events = len(self._events) - len(kept)
        self._events = kept
        self._event_ids = {e.id for e in kept}

        kept_metrics = [m for m in self._metrics if m.period_end >= cutoff]
        removed_metrics = len(self._metrics) - len(kept_metrics)
        self._metrics = deque(kept_metrics, maxlen=self._metrics.maxlen)

        if self.config.storage_type == "file" and self.storage_file.exists():
            # Filter the file itself; it also holds events evicted from memory
            with open(self.storage_file, "r", encoding="utf-8") as f:
                lines = [line for line in f if line.strip()]
            retained = [
                line for line in lines
                if parse_timestamp(json.loads(line)["timestamp"]) >= cutoff
            ]
            if len(retained) != len(lines):
                with open(self.storage_file, "w", encoding="utf-8") as f:
                    f.writelines(retained)

        elif self.config.storage_type == "database":
            async with self.session_maker() as session:
                await session.execute(delete(AccessEventModel).where(AccessEventModel.timestamp < cutoff))
                await session.commit()

        if removed_events or removed_metrics:
            logger.info("Telemetry cleanup removed %d events and %d metrics", removed_events, removed_metrics)
        return {"events": removed_events, "metrics": removed_metrics}

    def start(self) -> None:
        self._aggregator.start()

    async def stop(self) -> None:
        await self._aggregator.stop()


def _event_to_model(event: AccessEvent) -> AccessEventModel:
    return AccessEventModel(
        id=event.id,
        element_name=event.element_name,
        element_type=event.element_type,
        timestamp=event.timestamp,
        source=event.source.to_dict(),
        query_type=event.query_type.value,
        execution_time_ms=event.execution_time_ms,
        meta=dict(event.metadata),
    )


def _model_to_event(model: AccessEventModel) -> AccessEvent:
    return AccessEvent(
        id=model.id,
        element_name=model.element_name,
        element_type=model.element_type,
        timestamp=ensure_aware(model.timestamp),
        source=AccessSource.from_dict(model.source),
        query_type=QueryType(model.query_type),
        execution_time_ms=model.execution_time_ms,
        metadata=model.meta or {},
    )
