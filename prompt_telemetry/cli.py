#!/usr/bin/env python3
"""
Prompt Telemetry - Command Line Interface

Run the telemetry API, replay log files through the pipeline and inspect
performance for a monitored application.
"""

import click
import asyncio
import json
import sys
import time
from contextlib import asynccontextmanager

from .config.logging_config import setup_file_logging
from .config.settings import TelemetrySettings
from .monitoring.exceptions import BatchIngestionError, TelemetryError
from .monitoring.models import (
    DetectionThresholds, LogContext, LogEntry, MonitoringConfig, NotificationSettings
)
from .monitoring.telemetry_service import TelemetryService


INGEST_CHUNK_SIZE = 100


@asynccontextmanager
async def running_service(db_path):
    settings = TelemetrySettings(db_path=db_path) if db_path else TelemetrySettings()
    service = TelemetryService(settings)
    await service.start()
    try:
        yield service
    finally:
        await service.stop()


def parse_log_line(line: str, tenant_id: str, app_id: str) -> LogEntry:
    """Build a LogEntry from one JSON line of an ingest file"""
    record = json.loads(line)
    if isinstance(record, str):
        record = {"content": record}

    return LogEntry(
        tenant_id=tenant_id,
        app_id=record.get("app_id", app_id),
        content=record["content"],
        timestamp=float(record.get("timestamp", time.time())),
        level=record.get("level", "info"),
        context=LogContext.from_dict(record.get("context"))
    )


@click.group()
@click.option("--db-path", default=None, help="SQLite database path (default: TELEMETRY_DB_PATH)")
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose logging")
@click.pass_context
def cli(ctx, db_path, verbose):
    """Prompt Telemetry - issue detection and performance tracking for AI logs"""
    ctx.ensure_object(dict)
    setup_file_logging(log_level="DEBUG" if verbose else "INFO", console=verbose)

    ctx.obj['db_path'] = db_path
    ctx.obj['verbose'] = verbose


@cli.command()
@click.option("--host", default="0.0.0.0", help="Bind address")
@click.option("--port", default=8000, help="Bind port")
@click.pass_context
def serve(ctx, host, port):
    """Run the HTTP API"""
    import uvicorn
    from .api.main import create_app

    settings = TelemetrySettings(db_path=ctx.obj['db_path']) if ctx.obj['db_path'] else TelemetrySettings()
    error = settings.validate()
    if error:
        click.echo(f"[ERROR] Invalid settings: {error}", err=True)
        sys.exit(1)

    click.echo(f"[SERVE] Prompt Telemetry API on http://{host}:{port}")
    uvicorn.run(create_app(TelemetryService(settings)), host=host, port=port, log_level="info")


@cli.command()
@click.argument("log_file", type=click.File("r"))
@click.option("--tenant", "tenant_id", required=True, help="Tenant identifier")
@click.option("--app-id", required=True, help="Application identifier")
@click.pass_context
def ingest(ctx, log_file, tenant_id, app_id):
    """Ingest a JSON lines file of execution logs"""

    async def _ingest():
        entries = []
        for line_number, line in enumerate(log_file, start=1):
            if not line.strip():
                continue
            try:
                entries.append(parse_log_line(line, tenant_id, app_id))
            except (ValueError, KeyError) as e:
                click.echo(f"[SKIP] line {line_number}: {e}", err=True)

        stored = failed = 0
        async with running_service(ctx.obj['db_path']) as service:
            for start in range(0, len(entries), INGEST_CHUNK_SIZE):
                chunk = entries[start:start + INGEST_CHUNK_SIZE]
                try:
                    stored += len(await service.ingest_batch(chunk))
                except BatchIngestionError as e:
                    stored += e.succeeded
                    failed += len(e.failures)

            # finish background detection before shutting down
            while service.log_monitor.queue_size:
                await service.log_monitor.process_queue()

        click.echo(f"[DONE] Stored {stored} log entries ({failed} failed)")
        if failed:
            sys.exit(1)

    asyncio.run(_ingest())


@cli.command()
@click.option("--tenant", "tenant_id", required=True, help="Tenant identifier")
@click.option("--app-id", required=True, help="Application identifier")
@click.option("--hours", default=24, type=click.IntRange(1, 168), help="Trend window in hours")
@click.pass_context
def dashboard(ctx, tenant_id, app_id, hours):
    """Print the performance dashboard as JSON"""

    async def _dashboard():
        async with running_service(ctx.obj['db_path']) as service:
            data = await service.performance_tracker.get_performance_dashboard(tenant_id, app_id, hours)
        click.echo(json.dumps(data.to_dict(), indent=2))

    asyncio.run(_dashboard())


@cli.command()
@click.option("--tenant", "tenant_id", required=True, help="Tenant identifier")
@click.option("--app-id", required=True, help="Application identifier")
@click.option("--hours", default=1, type=click.IntRange(1, 168), help="Snapshot window in hours")
@click.pass_context
def snapshot(ctx, tenant_id, app_id, hours):
    """Print a performance snapshot"""

    async def _snapshot():
        async with running_service(ctx.obj['db_path']) as service:
            snap = await service.performance_tracker.get_performance_snapshot(tenant_id, app_id, hours)

        click.echo(f"Requests:       {snap.request_count:g}")
        click.echo(f"Throughput:     {snap.throughput:.2f} req/min")
        click.echo(f"Response time:  avg {snap.response_time.avg:.0f}ms, "
                   f"p95 {snap.response_time.p95:.0f}ms, p99 {snap.response_time.p99:.0f}ms")
        click.echo(f"Error rate:     {snap.error_rate:.1f}%")
        click.echo(f"Issue rate:     {snap.issue_rate:.1f}%")
        click.echo(f"Quality score:  {snap.quality_score:.1f}")
        click.echo(f"Tokens:         avg {snap.token_usage.avg:.0f}, total {snap.token_usage.total:g}")

    asyncio.run(_snapshot())


@cli.group()
def config():
    """Manage monitoring configs"""


@config.command("add")
@click.option("--tenant", "tenant_id", required=True, help="Tenant identifier")
@click.option("--app-id", required=True, help="Application identifier")
@click.option("--real-time", is_flag=True, help="Run detection during ingestion")
@click.option("--hallucination-confidence", default=0.7, type=click.FloatRange(0, 1))
@click.option("--performance-threshold-ms", default=5000.0, type=click.FloatRange(min=0, min_open=True))
@click.option("--error-rate-threshold", default=5.0, type=click.FloatRange(0, 100))
@click.option("--webhook-url", default=None, help="Webhook for issue notifications")
@click.option("--chat-webhook", default=None, help="Chat relay webhook")
@click.option("--email-alerts", is_flag=True, help="Emit email alert events")
@click.pass_context
def config_add(ctx, tenant_id, app_id, real_time, hallucination_confidence,
               performance_threshold_ms, error_rate_threshold, webhook_url, chat_webhook, email_alerts):
    """Create or replace a monitoring config"""
    monitoring_config = MonitoringConfig(
        tenant_id=tenant_id,
        app_id=app_id,
        real_time_processing=real_time,
        thresholds=DetectionThresholds(
            hallucination_confidence=hallucination_confidence,
            performance_threshold_ms=performance_threshold_ms,
            error_rate_threshold_pct=error_rate_threshold
        ),
        notification=NotificationSettings(
            webhook_url=webhook_url,
            chat_webhook=chat_webhook,
            email_alerts_enabled=email_alerts
        )
    )

    async def _add():
        async with running_service(ctx.obj['db_path']) as service:
            await service.add_config(monitoring_config)
        click.echo(f"[CONFIG] Saved config for {tenant_id}/{app_id}")

    try:
        asyncio.run(_add())
    except TelemetryError as e:
        click.echo(f"[ERROR] {e}", err=True)
        sys.exit(1)


@config.command("remove")
@click.option("--tenant", "tenant_id", required=True, help="Tenant identifier")
@click.option("--app-id", required=True, help="Application identifier")
@click.pass_context
def config_remove(ctx, tenant_id, app_id):
    """Remove a monitoring config"""

    async def _remove():
        async with running_service(ctx.obj['db_path']) as service:
            return await service.remove_config(tenant_id, app_id)

    if asyncio.run(_remove()):
        click.echo(f"[CONFIG] Removed config for {tenant_id}/{app_id}")
    else:
        click.echo(f"[CONFIG] No config found for {tenant_id}/{app_id}")
        sys.exit(1)


def main():
    cli(obj={})


if __name__ == "__main__":
    main()
