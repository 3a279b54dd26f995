"""
Tests for the Telemetry Collector
=================================
"""

import csv
import json
from datetime import timedelta

import pytest

from dbretire.config import TelemetryConfig
from dbretire.db import close_state_db, init_state_db
from dbretire.events import AccessEvent, AccessSource, QueryType, SourceType, detect_query_type
from dbretire.telemetry import TelemetryCollector, classify_trend, linear_slope, risk_for_count


def _event(when, name="orders_legacy_deprecated_20240115", query_type=QueryType.SELECT, **kwargs):
    return AccessEvent(
        element_name=name,
        element_type="table",
        timestamp=when,
        source=AccessSource(SourceType.APPLICATION, "billing"),
        query_type=query_type,
        **kwargs,
    )


# =============================================================================
# Trend Math Tests
# =============================================================================

class TestTrendMath:
    """Tests for the least-squares trend classifier."""

    def test_increasing(self):
        assert classify_trend([1, 2, 3, 4, 5]) == "increasing"
        assert linear_slope([1, 2, 3, 4, 5]) == pytest.approx(1.0)

    def test_ten_day_growth(self):
        assert classify_trend(list(range(1, 11))) == "increasing"

    def test_decreasing(self):
        assert classify_trend([9, 7, 5, 3]) == "decreasing"

    def test_flat_is_stable(self):
        assert classify_trend([3, 3, 3, 3]) == "stable"

    def test_short_series_is_stable(self):
        assert classify_trend([]) == "stable"
        assert classify_trend([42]) == "stable"

    def test_small_slope_is_stable(self):
        assert classify_trend([10, 10, 10, 10, 10, 10, 10, 10, 10, 10.5]) == "stable"

    def test_risk_for_count(self):
        assert risk_for_count(3) == "low"
        assert risk_for_count(11) == "medium"
        assert risk_for_count(101) == "high"

    @pytest.mark.parametrize("sql,expected", [
        ("SELECT * FROM t", QueryType.SELECT),
        ("  insert into t values (1)", QueryType.INSERT),
        ("-- note\nUPDATE t SET x = 1", QueryType.UPDATE),
        ("WITH c AS (SELECT 1) DELETE FROM t", QueryType.DELETE),
        ("VACUUM", QueryType.OTHER),
        ("", QueryType.OTHER),
    ])
    def test_detect_query_type(self, sql, expected):
        assert detect_query_type(sql) == expected


# =============================================================================
# Ingestion Tests
# =============================================================================

class TestIngestion:
    """Tests for batch ingestion and the ring buffer."""

    @pytest.mark.asyncio
    async def test_duplicates_are_skipped(self, clock):
        telemetry = TelemetryCollector(TelemetryConfig(), clock=clock)
        first = _event(clock())
        second = _event(clock())

        assert await telemetry.record_access_events([first, second, first]) == 2
        assert await telemetry.record_access_events([first]) == 0
        assert telemetry.event_count == 2
        assert telemetry.duplicate_events == 2

    @pytest.mark.asyncio
    async def test_disabled_ingests_nothing(self, clock):
        telemetry = TelemetryCollector(TelemetryConfig(enabled=False), clock=clock)
        assert await telemetry.record_access_events([_event(clock())]) == 0

    @pytest.mark.asyncio
    async def test_full_buffer_evicts_oldest(self, clock):
        telemetry = TelemetryCollector(TelemetryConfig(max_event_buffer_size=3), clock=clock)
        events = [_event(clock() + timedelta(seconds=i)) for i in range(5)]
        await telemetry.record_access_events(events)

        assert telemetry.event_count == 3
        assert telemetry.evicted_events == 2
        assert [e.id for e in telemetry.get_events()] == [e.id for e in events[2:]]

    @pytest.mark.asyncio
    async def test_usage_tally_survives_eviction(self, clock):
        telemetry = TelemetryCollector(TelemetryConfig(max_event_buffer_size=2), clock=clock)
        await telemetry.record_access_events([_event(clock(), name="used")])
        await telemetry.record_access_events([_event(clock() + timedelta(seconds=i), name="busy") for i in range(2)])

        assert telemetry.get_events(element_name="used") == []
        usage = telemetry.element_usage("used")
        assert (usage.count, usage.last_accessed) == (1, clock())
        assert telemetry.element_usage("busy").count == 2
        assert telemetry.element_usage("never").count == 0

    @pytest.mark.asyncio
    async def test_failed_persist_leaves_buffer_untouched(self, clock, monkeypatch):
        telemetry = TelemetryCollector(TelemetryConfig(), clock=clock)

        async def broken(events):
            raise OSError("disk full")

        monkeypatch.setattr(telemetry, "_persist", broken)
        with pytest.raises(OSError):
            await telemetry.record_access_events([_event(clock())])
        assert telemetry.event_count == 0

    @pytest.mark.asyncio
    async def test_get_events_filters(self, clock):
        telemetry = TelemetryCollector(TelemetryConfig(), clock=clock)
        await telemetry.record_access_events([
            _event(clock() - timedelta(hours=2), "a"),
            _event(clock(), "a"),
            _event(clock(), "b"),
        ])
        assert len(telemetry.get_events(element_name="a")) == 2
        assert len(telemetry.get_events(since=clock() - timedelta(hours=1))) == 2

    @pytest.mark.asyncio
    async def test_current_summary(self, clock):
        telemetry = TelemetryCollector(TelemetryConfig(), clock=clock)
        await telemetry.record_access_events([
            _event(clock() - timedelta(hours=3), "a"),
            _event(clock(), "a"),
            _event(clock(), "b"),
        ])
        summary = telemetry.get_current_summary()
        assert summary["total_events"] == 3
        assert summary["events_last_hour"] == 2
        assert summary["events_last_24h"] == 3
        assert summary["unique_elements_24h"] == 2
        assert summary["storage_type"] == "memory"


# =============================================================================
# Persistence Tests
# =============================================================================

class TestPersistence:
    """Tests for the file and database backends."""

    @pytest.mark.asyncio
    async def test_file_storage_round_trip(self, clock, temp_dir):
        config = TelemetryConfig(storage_type="file", storage_path=str(temp_dir / "telemetry"))
        telemetry = TelemetryCollector(config, clock=clock)
        event = _event(clock(), execution_time_ms=4.5)
        await telemetry.record_access_events([event])

        reloaded = TelemetryCollector(config, clock=clock)
        assert await reloaded.load_persisted() == 1
        assert reloaded.get_events() == [event]

    @pytest.mark.asyncio
    async def test_file_reload_skips_expired(self, clock, temp_dir):
        config = TelemetryConfig(storage_type="file", storage_path=str(temp_dir), retention_days=7)
        telemetry = TelemetryCollector(config, clock=clock)
        await telemetry.record_access_events([_event(clock() - timedelta(days=10)), _event(clock())])

        reloaded = TelemetryCollector(config, clock=clock)
        assert await reloaded.load_persisted() == 1

    @pytest.mark.asyncio
    async def test_database_storage_round_trip(self, clock, temp_dir):
        session_maker = await init_state_db(f"sqlite+aiosqlite:///{temp_dir / 'state.db'}")
        try:
            config = TelemetryConfig(storage_type="database")
            telemetry = TelemetryCollector(config, session_maker=session_maker, clock=clock)
            event = _event(clock())
            await telemetry.record_access_events([event])

            reloaded = TelemetryCollector(config, session_maker=session_maker, clock=clock)
            assert await reloaded.load_persisted() == 1
            assert reloaded.get_events()[0].id == event.id
            assert reloaded.get_events()[0].timestamp == event.timestamp
        finally:
            await close_state_db()

    def test_database_storage_needs_session_maker(self):
        with pytest.raises(ValueError):
            TelemetryCollector(TelemetryConfig(storage_type="database"))

    @pytest.mark.asyncio
    async def test_cleanup_purges_old_events(self, clock, temp_dir):
        config = TelemetryConfig(storage_type="file", storage_path=str(temp_dir), retention_days=7)
        telemetry = TelemetryCollector(config, clock=clock)
        await telemetry.record_access_events([_event(clock() - timedelta(days=10)), _event(clock())])

        assert await telemetry.cleanup() == {"events": 1, "metrics": 0}
        assert telemetry.event_count == 1
        lines = telemetry.storage_file.read_text().splitlines()
        assert len(lines) == 1

    @pytest.mark.asyncio
    async def test_cleanup_keeps_recent_events_evicted_from_memory(self, clock, temp_dir):
        config = TelemetryConfig(
            storage_type="file", storage_path=str(temp_dir), retention_days=7, max_event_buffer_size=2,
        )
        telemetry = TelemetryCollector(config, clock=clock)
        recent = [_event(clock() - timedelta(hours=h)) for h in (3, 2, 1)]
        await telemetry.record_access_events([_event(clock() - timedelta(days=10))] + recent)
        assert telemetry.event_count == 2

        await telemetry.cleanup()

        stored = [json.loads(line)["id"] for line in telemetry.storage_file.read_text().splitlines()]
        assert stored == [e.id for e in recent]

    @pytest.mark.asyncio
    async def test_aggregation_tick_runs_cleanup(self, clock):
        telemetry = TelemetryCollector(TelemetryConfig(retention_days=30), clock=clock)
        await telemetry.record_access_events([_event(clock() - timedelta(days=40)), _event(clock())])

        await telemetry._aggregator.run_once()

        assert telemetry.event_count == 1
        assert len(telemetry.get_metrics()) == 1
        assert telemetry._aggregator.failures == 0


# =============================================================================
# Aggregation, Trend and Export Tests
# =============================================================================

class TestAnalysis:
    """Tests for metrics, trend analysis and export."""

    @pytest.mark.asyncio
    async def test_aggregate_window(self, clock):
        telemetry = TelemetryCollector(TelemetryConfig(aggregation_interval_minutes=15), clock=clock)
        await telemetry.record_access_events([
            _event(clock() - timedelta(minutes=5), execution_time_ms=10),
            _event(clock() - timedelta(minutes=1), query_type=QueryType.UPDATE, execution_time_ms=20),
            _event(clock() - timedelta(hours=2)),
        ])
        metrics = await telemetry.aggregate_metrics()

        assert metrics.total_events == 2
        assert metrics.access_by_type == {"SELECT": 1, "UPDATE": 1}
        assert metrics.average_response_time == 15
        assert telemetry.get_metrics() == [metrics]

    @pytest.mark.asyncio
    async def test_increasing_element_is_flagged(self, clock):
        telemetry = TelemetryCollector(TelemetryConfig(), clock=clock)
        events = []
        for days_ago, count in [(3, 1), (2, 2), (1, 3), (0, 4)]:
            events += [_event(clock() - timedelta(days=days_ago), "hot") for _ in range(count)]
        events.append(_event(clock() - timedelta(days=2), "cold"))
        await telemetry.record_access_events(events)

        analysis = telemetry.analyze_trends(days=30)
        assert analysis.elements["hot"].daily_counts == [1, 2, 3, 4]
        assert analysis.elements["hot"].trend == "increasing"
        assert analysis.risk_elements == ["hot"]
        assert analysis.elements["cold"].daily_counts == [1, 0, 0]
        assert any("hot" in r for r in analysis.recommendations)

    def test_no_access_recommends_review(self, clock):
        analysis = TelemetryCollector(TelemetryConfig(), clock=clock).analyze_trends(days=30)
        assert analysis.overall_trend == "stable"
        assert "can be reviewed for removal" in analysis.recommendations[0]

    @pytest.mark.asyncio
    async def test_export_writes_json_and_csv(self, clock, temp_dir):
        config = TelemetryConfig(export_directory=str(temp_dir / "exports"))
        telemetry = TelemetryCollector(config, clock=clock)
        await telemetry.record_access_events([_event(clock() - timedelta(hours=1)) for _ in range(3)])

        export = telemetry.export_telemetry_data(clock() - timedelta(days=1), clock(), format="both")

        assert export.metadata["event_count"] == 3
        assert export.summary["risk_ranking"][0]["count"] == 3
        assert len(export.files) == 2

        json_file = next(f for f in export.files if f.endswith(".json"))
        with open(json_file, encoding="utf-8") as f:
            assert len(json.load(f)["events"]) == 3
        csv_file = next(f for f in export.files if f.endswith(".csv"))
        with open(csv_file, newline="", encoding="utf-8") as f:
            rows = list(csv.reader(f))
        assert rows[0][0] == "id"
        assert len(rows) == 4

    def test_export_without_directory_writes_nothing(self, clock):
        export = TelemetryCollector(TelemetryConfig(), clock=clock).export_telemetry_data(
            clock() - timedelta(days=1), clock()
        )
        assert export.files == []
        assert export.events == []
