#!/usr/bin/env python
"""
Deprecation CLI - Plan, execute, monitor and roll back schema deprecations.

Usage:
    dbretire plan table:orders_legacy [--reason unused] [--created-by USER] [--save]
    dbretire approve MIGRATION_ID --by USER
    dbretire execute MIGRATION_ID [--confirm|--force]
    dbretire rollback MIGRATION_ID [--confirm|--force]
    dbretire status [--detailed]
    dbretire list [--verbose]
    dbretire validate BACKUP_ID [--detailed]
    dbretire monitor [--realtime] [--interval 10]
    dbretire export [--days 30] [--format json|csv|both] [--output DIR]
    dbretire alerts [--limit 20] [--severity warning]

Configuration is read from environment variables (a .env file is loaded
first), then dbretire_config.json in the current directory, then the
preset for DEPRECATION_ENV.
"""

import argparse
import asyncio
import json
import logging
import sys
from datetime import timedelta
from pathlib import Path
from typing import Awaitable, Callable, Optional

from dotenv import load_dotenv

from dbretire import __version__
from dbretire.alerts import AlertSeverity
from dbretire.config import DeprecationConfig
from dbretire.deprecation import DeprecationContext
from dbretire.elements import DeprecationReason
from dbretire.errors import DeprecationError, UnsafeDeprecationError
from dbretire.migration import Migration
from dbretire.output import (
    console,
    create_table,
    print_error,
    print_header,
    print_info,
    print_key_value_table,
    print_list,
    print_muted,
    print_panel,
    print_success,
    print_table,
    print_warning,
    setup_rich_logging,
    spinner,
    styled,
)
from dbretire.safety import CheckResult, summarize

Handler = Callable[[DeprecationContext, argparse.Namespace], Awaitable[int]]


def _fmt_time(value) -> str:
    return value.strftime("%Y-%m-%d %H:%M:%S") if value else "never"


def print_migration_summary(migration: Migration) -> None:
    meta = migration.metadata
    print_key_value_table({
        "ID": f"[dr.accent]{migration.id}[/]",
        "Phase": styled(migration.phase.value, "dr.phase"),
        "Risk": meta.risk_level.label,
        "Approval required": "yes" if meta.approval_required else "no",
        "Approved": migration.approval["approved_by"] if migration.approval else "no",
        "Estimated duration": f"{meta.estimated_duration_seconds}s",
        "Reason": meta.reason,
        "Created by": meta.created_by,
        "Backup": meta.backup_id or "none",
    }, title="Migration")

    table = create_table(columns=["Type", "Original", "Deprecated name"])
    for element in migration.elements:
        table.add_row(element.element_type.value, element.original_name, f"[dr.accent]{element.deprecated_name}[/]")
    print_table(table)


# =============================================================================
# Commands
# =============================================================================

async def cmd_plan(ctx: DeprecationContext, args) -> int:
    """Plan a deprecation migration."""
    try:
        with spinner("Running safety checks..."):
            migration = await ctx.system.plan_deprecation(
                args.elements,
                reason=args.reason,
                created_by=args.created_by,
            )
    except UnsafeDeprecationError as e:
        print_error("Planning blocked by critical safety checks")
        for failure in e.failures:
            print_error(f"{failure.element}: {failure.name}: {failure.message}")
        return 1

    print_header(f"Planned {migration.id}")
    print_migration_summary(migration)

    checks = [CheckResult.from_dict(c) for c in migration.safety_checks]
    failed = [c for c in checks if not c.passed]
    if failed:
        console.print()
        print_warning(f"{len(failed)} safety checks failed:")
        print_list([f"[{c.severity.label}] {c.element}: {c.message}" for c in failed])

    if args.save:
        path = Path(f"migration-plan-{migration.id}.json")
        payload = {**migration.to_dict(), "safety_summary": summarize(checks)}
        path.write_text(json.dumps(payload, indent=2), encoding="utf-8")
        print_success(f"Plan written to {path}")

    console.print()
    if migration.metadata.approval_required:
        print_info(f"Approve with: dbretire approve {migration.id} --by <name>")
    print_info(f"Execute with: dbretire execute {migration.id} --confirm")
    return 0


async def cmd_approve(ctx: DeprecationContext, args) -> int:
    """Approve a planned migration."""
    migration = await ctx.system.approve_migration(args.migration_id, args.by)
    print_success(f"Migration {migration.id} approved by {args.by}")
    return 0


async def cmd_execute(ctx: DeprecationContext, args) -> int:
    """Execute a planned migration."""
    migration = await ctx.system.get_migration(args.migration_id)
    if not (args.confirm or args.force):
        print_migration_summary(migration)
        print_panel(
            "This renames the elements above.\nRe-run with [bold]--confirm[/] to execute.",
            title="Confirmation required",
            border_style="dr.warn",
        )
        return 0

    with spinner(f"Executing {migration.id}..."):
        migration = await ctx.system.execute_deprecation(args.migration_id)

    print_success(f"Migration {migration.id} completed; {len(migration.elements)} elements renamed")
    if migration.metadata.backup_id:
        print_muted(f"Backup: {migration.metadata.backup_id}")
    return 0


async def cmd_rollback(ctx: DeprecationContext, args) -> int:
    """Roll back a completed migration."""
    migration = await ctx.system.get_migration(args.migration_id)
    if not (args.confirm or args.force):
        dry_run = await ctx.rollback_manager.test_rollback_plan(migration)
        print_migration_summary(migration)
        for issue in dry_run["issues"]:
            print_error(issue)
        for warning in dry_run["warnings"]:
            print_warning(warning)
        print_panel(
            "This restores the original names.\nRe-run with [bold]--confirm[/] to roll back.",
            title="Confirmation required",
            border_style="dr.warn",
        )
        return 0

    with spinner(f"Rolling back {migration.id}..."):
        result = await ctx.system.rollback_migration(args.migration_id)

    print_success(
        f"Rolled back {result.completed_steps}/{result.total_steps} elements "
        f"in {result.duration_seconds:.2f}s ({result.rollback_id})"
    )
    return 0


async def cmd_status(ctx: DeprecationContext, args) -> int:
    """Show deprecation status and the monitoring overview."""
    status = await ctx.system.get_deprecation_status()
    dashboard = ctx.monitor.get_dashboard_data()

    print_header("Deprecation Status")
    overview = {
        "Deprecated elements": status["total_deprecated"],
        "Monitored": dashboard.overview["total_monitored"],
        "Accesses in window": dashboard.overview["total_access"],
        "Ready for removal": len(status["ready_for_removal"]),
    }
    for element_type, count in status["by_type"].items():
        if count:
            overview[f"  {element_type}s"] = count
    print_key_value_table(overview, title="Overview")

    if status["ready_for_removal"]:
        console.print()
        print_info("Removal candidates:")
        print_list(status["ready_for_removal"])

    if args.detailed and dashboard.elements:
        console.print()
        table = create_table(columns=["Element", "Type", "Original", "Accesses", "Last accessed", "Status"])
        for element in dashboard.elements:
            table.add_row(
                element.element_name,
                element.element_type,
                element.original_name,
                f"[dr.number]{element.access_count}[/]",
                _fmt_time(element.last_accessed),
                styled(element.status, "dr.status"),
            )
        print_table(table)

    if args.detailed and status["recent_activity"]:
        console.print()
        print_info("Recent activity:")
        print_list([f"{r['element']} at {r['last_accessed'][:19]}" for r in status["recent_activity"][:10]])
    return 0


async def cmd_list(ctx: DeprecationContext, args) -> int:
    """List migrations, newest first."""
    migrations = await ctx.system.list_migrations()
    if not migrations:
        print_info("No migrations found")
        return 0

    print_header(f"Migrations ({len(migrations)})")
    table = create_table(columns=["ID", "Phase", "Risk", "Elements", "Created", "Created by"])
    for m in migrations:
        table.add_row(
            f"[dr.accent]{m.id}[/]",
            styled(m.phase.value, "dr.phase"),
            m.metadata.risk_level.label,
            str(len(m.elements)),
            f"[dr.timestamp]{_fmt_time(m.timestamp)}[/]",
            m.metadata.created_by,
        )
    print_table(table)

    if args.show_details:
        for m in migrations:
            console.print()
            console.print(f"[dr.accent]{m.id}[/]")
            print_list([f"{e.element_type.value} {e.original_name} -> {e.deprecated_name}" for e in m.elements])
            for note in m.notes:
                print_muted(f"    {note}")
    return 0


async def cmd_validate(ctx: DeprecationContext, args) -> int:
    """Validate a backup; exits 1 when validation fails."""
    with spinner(f"Validating {args.backup_id}..."):
        result = await ctx.backup_validator.validate_backup(args.backup_id)

    if result.passed:
        print_success(f"Backup {args.backup_id} passed {result.validation_level} validation (score {result.score})")
    else:
        print_error(f"Backup {args.backup_id} failed {result.validation_level} validation (score {result.score})")

    if args.detailed or not result.passed:
        table = create_table(columns=["Check", "Severity", "Result", "Message"])
        for check in result.checks:
            outcome = "[dr.ok]pass[/]" if check.passed else "[dr.err]fail[/]"
            table.add_row(check.name, styled(_severity_style(check.severity), "dr.severity"), outcome, check.message)
        print_table(table)
    return 0 if result.passed else 1


def _severity_style(severity: str) -> str:
    # Backup check severities share the alert palette
    return {"low": "info", "medium": "warning", "high": "error"}.get(severity, severity)


def print_element_stats(ctx: DeprecationContext) -> None:
    stats = ctx.monitor.get_all_stats()
    if not stats:
        print_info("No elements are being monitored")
        return

    table = create_table(columns=["Element", "Type", "Accesses", "Last accessed", "Avg ms", "Query types"])
    for s in stats.values():
        avg = f"{s.average_execution_time:.1f}" if s.average_execution_time is not None else "-"
        query_types = ", ".join(f"{k}={v}" for k, v in sorted(s.query_types.items())) or "-"
        table.add_row(
            s.element_name,
            s.element_type,
            f"[dr.number]{s.total_access}[/]",
            _fmt_time(s.last_accessed),
            avg,
            query_types,
        )
    print_table(table)


async def cmd_monitor(ctx: DeprecationContext, args) -> int:
    """Show per-element usage; --realtime polls until interrupted."""
    print_header("Deprecated Element Usage")
    print_element_stats(ctx)
    if not args.realtime:
        return 0

    print_muted(f"Watching the last 60 seconds every {args.interval}s. Press Ctrl+C to stop.")
    while True:
        await asyncio.sleep(args.interval)
        await ctx.telemetry.load_persisted()
        recent = ctx.monitor.get_recent_activity(60)
        stamp = _fmt_time(ctx.monitor.clock())
        if not recent:
            print_muted(f"[{stamp}] no activity")
            continue
        console.print(f"[dr.timestamp]{stamp}[/] [dr.number]{len(recent)}[/] accesses")
        print_list([
            f"{e.element_name} {e.query_type.value} from {e.source.key}" for e in recent[:10]
        ])


async def cmd_export(ctx: DeprecationContext, args) -> int:
    """Export telemetry for the last N days."""
    ctx.telemetry.config.export_directory = args.output or ctx.config.telemetry.export_directory or "."
    end = ctx.telemetry.clock()
    export = ctx.telemetry.export_telemetry_data(end - timedelta(days=args.days), end, args.format)
    print_success(f"Exported {export.metadata['event_count']} events")
    print_list(export.files)
    return 0


async def cmd_alerts(ctx: DeprecationContext, args) -> int:
    """Show recent alerts, newest first."""
    await ctx.alerts.load_persisted(args.limit * 5)
    severity = AlertSeverity(args.severity) if args.severity else None
    alerts = ctx.alerts.get_alert_history(limit=args.limit, severity=severity)
    if not alerts:
        print_info("No alerts recorded")
        return 0

    table = create_table(columns=["Time", "Severity", "Type", "Title", "State"])
    for alert in alerts:
        state = "resolved" if alert.resolved else ("acknowledged" if alert.acknowledged else "open")
        table.add_row(
            f"[dr.timestamp]{_fmt_time(alert.timestamp)}[/]",
            styled(alert.severity.value, "dr.severity"),
            alert.type.value,
            alert.title,
            state,
        )
    print_table(table)
    return 0


# =============================================================================
# Entry Point
# =============================================================================

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="dbretire",
        description="Safely deprecate database tables, columns, indexes and constraints",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  dbretire plan table:orders_legacy column:orders.notes --reason unused --save
  dbretire execute dep_20240115093000_a1b2c3 --confirm
  dbretire monitor --realtime --interval 5

Environment Variables:
  DATABASE_URL           Target database (default: sqlite+aiosqlite:///app.db)
  DEPRECATION_ENV        development | test | staging | production
  DEPRECATION_STATE_URL  Where migrations, events and alerts are stored
        """,
    )
    parser.add_argument("--version", action="version", version=f"dbretire {__version__}")
    parser.add_argument("--config", type=Path, default=None, help="Config file (default: ./dbretire_config.json)")
    parser.add_argument("--database-url", default=None, help="Override DATABASE_URL")
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging on stderr")

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    plan_parser = subparsers.add_parser("plan", help="Plan a deprecation migration")
    plan_parser.add_argument("elements", nargs="+", help="Elements as type:name (column/constraint as table.name)")
    plan_parser.add_argument(
        "--reason", default="unused", choices=[r.value for r in DeprecationReason], help="Why the elements go"
    )
    plan_parser.add_argument("--created-by", default=None, help="Operator recorded on the migration")
    plan_parser.add_argument("--save", action="store_true", help="Write migration-plan-<id>.json")

    approve_parser = subparsers.add_parser("approve", help="Approve a planned migration")
    approve_parser.add_argument("migration_id")
    approve_parser.add_argument("--by", required=True, help="Approver")

    for name, help_text in (("execute", "Execute a planned migration"), ("rollback", "Roll back a completed migration")):
        sub = subparsers.add_parser(name, help=help_text)
        sub.add_argument("migration_id")
        sub.add_argument("--confirm", action="store_true", help="Actually apply the change")
        sub.add_argument("--force", action="store_true", help="Same as --confirm")

    status_parser = subparsers.add_parser("status", help="Show deprecation status")
    status_parser.add_argument("--detailed", action="store_true", help="Per-element status")

    list_parser = subparsers.add_parser("list", help="List migrations")
    list_parser.add_argument("--verbose", action="store_true", dest="show_details", help="Show elements and notes")

    validate_parser = subparsers.add_parser("validate", help="Validate a backup")
    validate_parser.add_argument("backup_id")
    validate_parser.add_argument("--detailed", action="store_true", help="Show every check")

    monitor_parser = subparsers.add_parser("monitor", help="Show deprecated element usage")
    monitor_parser.add_argument("--realtime", action="store_true", help="Poll until interrupted")
    monitor_parser.add_argument("--interval", type=float, default=10, help="Seconds between polls (default: 10)")

    export_parser = subparsers.add_parser("export", help="Export telemetry")
    export_parser.add_argument("--days", type=int, default=30)
    export_parser.add_argument("--format", choices=["json", "csv", "both"], default=None)
    export_parser.add_argument("--output", default=None, help="Directory for export files")

    alerts_parser = subparsers.add_parser("alerts", help="Show recent alerts")
    alerts_parser.add_argument("--limit", "-n", type=int, default=20)
    alerts_parser.add_argument("--severity", choices=[s.value for s in AlertSeverity], default=None)

    return parser


COMMANDS = {
    "plan": cmd_plan,
    "approve": cmd_approve,
    "execute": cmd_execute,
    "rollback": cmd_rollback,
    "status": cmd_status,
    "list": cmd_list,
    "validate": cmd_validate,
    "monitor": cmd_monitor,
    "export": cmd_export,
    "alerts": cmd_alerts,
}


def load_config(args) -> DeprecationConfig:
    config = DeprecationConfig.load(args.config)
    if args.database_url:
        config.database_url = args.database_url
    return config


async def run_command(handler: Handler, config: DeprecationConfig, args) -> int:
    ctx = await DeprecationContext.open(config)
    try:
        return await handler(ctx, args)
    finally:
        await ctx.close()


def main(argv: Optional[list] = None) -> int:
    load_dotenv()
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_rich_logging(logging.DEBUG if args.verbose else logging.WARNING)

    if not args.command:
        parser.print_help()
        return 1

    handler = COMMANDS.get(args.command)
    if handler is None:
        parser.print_help()
        return 1

    try:
        config = load_config(args)
        return asyncio.run(run_command(handler, config, args))
    except KeyboardInterrupt:
        print_muted("Interrupted")
        return 0 if args.command == "monitor" else 130
    except DeprecationError as e:
        print_error(str(e))
        return 1
    except Exception as e:
        logging.getLogger(__name__).debug("Unhandled error", exc_info=True)
        print_error(f"{type(e).__name__}: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
