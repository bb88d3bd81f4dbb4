"""
Command-line interface for finance-alerts.

Plays the scheduler's role: each command runs one evaluation or delivery
pass and exits. Cron (or any scheduler) invokes them on a cadence.

Usage:
    finance-alerts evaluate --user-id 42         # Evaluate one user
    finance-alerts evaluate --transaction-id 77  # Realtime evaluation
    finance-alerts evaluate-all --mode scheduled # Every user, paged
    finance-alerts evaluate-all --mode daily     # Bill reminders
    finance-alerts deliver-pending               # Re-drive deferred deliveries
    finance-alerts dead-letters list             # Inspect dead letters
    finance-alerts dead-letters replay <id>      # Re-queue one
    finance-alerts init-db                       # Create tables
    finance-alerts health                        # Check dependencies
"""

import asyncio
import signal
import sys
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

import click

from src.config.settings import get_settings
from src.observability.logging import bind_context, clear_context, get_logger, setup_logging
from src.observability.metrics import get_metrics

logger = get_logger(__name__)


@click.group()
@click.option("--debug", is_flag=True, help="Enable debug logging")
def main(debug: bool) -> None:
    """Finance Alerts - alert evaluation and notification delivery."""
    setup_logging("DEBUG" if debug else None)


@asynccontextmanager
async def _engine(with_dispatcher: bool = True) -> AsyncIterator[dict[str, Any]]:
    """Connect dependencies and wire the evaluation service and dispatcher."""
    import redis.asyncio as redis
    from src.alerts.config import AlertConfig
    from src.alerts.repository import AlertRepository
    from src.alerts.service import AlertEvaluationService
    from src.notifications.config import NotificationConfig
    from src.notifications.dispatcher import build_dispatcher
    from src.notifications.preferences import PreferenceRepository
    from src.storage.database import Database

    settings = get_settings()
    db = Database()
    await db.connect()
    redis_client = redis.from_url(
        str(settings.redis_url), encoding="utf-8", decode_responses=True,
    )

    notification_config = NotificationConfig()
    dispatcher = build_dispatcher(db, redis_client, settings, notification_config)
    service = AlertEvaluationService(
        config=AlertConfig(),
        alert_repo=AlertRepository(db),
        preferences=PreferenceRepository(db, notification_config),
        redis_client=redis_client,
        dispatcher=dispatcher if with_dispatcher else None,
    )

    def shutdown() -> None:
        service.request_shutdown()
        dispatcher.request_shutdown()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, shutdown)

    try:
        yield {"db": db, "service": service, "dispatcher": dispatcher}
    finally:
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.remove_signal_handler(sig)
        await redis_client.aclose()
        await db.close()
        clear_context()


def _abort_on_infrastructure(exc: BaseException) -> None:
    click.echo(click.style(f"Run aborted: {exc}", fg="red"), err=True)
    sys.exit(1)


@main.command()
@click.option("--user-id", type=int, default=None, help="Evaluate this user's alerts")
@click.option("--transaction-id", type=int, default=None, help="Realtime run for a new transaction")
@click.option(
    "--mode",
    type=click.Choice(["scheduled", "daily", "realtime", "manual"]),
    default="manual",
    help="Trigger mode (which alert types run)",
)
@click.option("--no-deliver", is_flag=True, help="Create notifications without delivering")
def evaluate(user_id: int | None, transaction_id: int | None, mode: str, no_deliver: bool) -> None:
    """Evaluate one user's alerts, or the alerts hit by one transaction."""
    from src.alerts.errors import INFRASTRUCTURE_ERRORS
    from src.alerts.schemas import EvaluationContext

    if user_id is None and transaction_id is None:
        raise click.UsageError("Pass --user-id or --transaction-id")

    async def run():
        async with _engine(with_dispatcher=not no_deliver) as engine:
            service = engine["service"]
            if transaction_id is not None:
                return await service.evaluate_transaction(transaction_id)
            return await service.evaluate_user(
                EvaluationContext(user_id=user_id, trigger_mode=mode)
            )

    try:
        notifications = asyncio.run(run())
    except INFRASTRUCTURE_ERRORS as e:
        _abort_on_infrastructure(e)
        return

    click.echo(f"Created {len(notifications)} notification(s)")
    for n in notifications:
        click.echo(f"  [{n.metadata.get('alert_type')}] {n.title}: {n.message}")


@main.command("evaluate-all")
@click.option(
    "--mode",
    type=click.Choice(["scheduled", "daily"]),
    default="scheduled",
    help="Batch trigger mode",
)
@click.option("--metrics/--no-metrics", default=False, help="Enable metrics server")
@click.option("--no-deliver", is_flag=True, help="Create notifications without delivering")
def evaluate_all(mode: str, metrics: bool, no_deliver: bool) -> None:
    """Evaluate every user with active alerts, page by page."""
    from src.alerts.errors import INFRASTRUCTURE_ERRORS

    async def run():
        if metrics:
            get_metrics().start_server()
        bind_context(command="evaluate-all", trigger_mode=mode)
        async with _engine(with_dispatcher=not no_deliver) as engine:
            total = await engine["service"].evaluate_all(mode)
            logger.info("Batch run finished", notifications=total)
            return total

    try:
        total = asyncio.run(run())
    except INFRASTRUCTURE_ERRORS as e:
        _abort_on_infrastructure(e)
        return

    click.echo(f"{mode} run created {total} notification(s)")


@main.command("deliver-pending")
@click.option("--limit", type=int, default=None, help="Maximum deliveries to re-drive")
def deliver_pending(limit: int | None) -> None:
    """Re-drive deferred, rate-limited and interrupted deliveries."""

    async def run():
        bind_context(command="deliver-pending")
        async with _engine() as engine:
            return await engine["dispatcher"].deliver_pending(limit)

    summary = asyncio.run(run())
    if not summary:
        click.echo("No pending deliveries")
        return
    for status, count in sorted(summary.items()):
        click.echo(f"  {status}: {count}")


@main.group("dead-letters")
def dead_letters() -> None:
    """Inspect and replay dead-lettered deliveries."""


@dead_letters.command("list")
@click.option("--channel", type=click.Choice(["email", "sms"]), default=None)
@click.option("--all", "include_replayed", is_flag=True, help="Include replayed entries")
@click.option("--limit", default=50, help="Maximum entries")
def dead_letters_list(channel: str | None, include_replayed: bool, limit: int) -> None:
    """List dead letters, newest first."""
    from src.notifications.dead_letter import DeadLetterSink
    from src.storage.database import Database

    async def run():
        db = Database()
        await db.connect()
        try:
            return await DeadLetterSink(db).list(
                channel=channel, include_replayed=include_replayed, limit=limit,
            )
        finally:
            await db.close()

    entries = asyncio.run(run())
    if not entries:
        click.echo("No dead letters")
        return
    for dl in entries:
        replayed = " (replayed)" if dl.replayed_at else ""
        click.echo(
            f"{dl.dead_letter_id}  {dl.created_at:%Y-%m-%d %H:%M}  {dl.channel:<5} "
            f"{dl.destination}  attempts={dl.attempts}  {dl.reason}{replayed}"
        )


@dead_letters.command("replay")
@click.argument("dead_letter_id")
def dead_letters_replay(dead_letter_id: str) -> None:
    """Re-queue a dead letter as a new pending delivery."""
    from src.notifications.dead_letter import DeadLetterSink
    from src.storage.database import Database

    async def run():
        db = Database()
        await db.connect()
        try:
            return await DeadLetterSink(db).replay(dead_letter_id)
        finally:
            await db.close()

    delivery = asyncio.run(run())
    if delivery is None:
        click.echo(click.style("Unknown or already replayed dead letter", fg="red"))
        sys.exit(1)
    click.echo(f"Queued delivery {delivery.delivery_id} ({delivery.channel})")


@main.command("init-db")
def init_db() -> None:
    """Initialize the database schema."""
    from src.alerts.repository import AlertRepository
    from src.storage.database import Database

    async def run():
        db = Database()
        await db.connect()

        repo = AlertRepository(db)
        await repo.create_tables()

        click.echo("Database initialized successfully")

        await db.close()

    asyncio.run(run())


@main.command()
def health() -> None:
    """Check health of all dependencies."""

    async def check():
        results: dict[str, bool] = {}
        settings = get_settings()

        # Check Redis
        try:
            import redis.asyncio as redis
            client = redis.from_url(str(settings.redis_url))
            results["redis"] = bool(await client.ping())
            await client.aclose()
        except Exception as e:
            results["redis"] = False
            logger.error("Redis health check failed", error=str(e))

        # Check PostgreSQL
        try:
            from src.storage.database import Database
            db = Database()
            await db.connect()
            results["postgres"] = await db.health_check()
            await db.close()
        except Exception as e:
            results["postgres"] = False
            logger.error("Postgres health check failed", error=str(e))

        # Check providers
        results["email_configured"] = settings.email_configured
        results["sms_configured"] = settings.sms_configured

        # Print results
        click.echo("\nHealth Check Results:")
        click.echo("-" * 40)

        all_healthy = True
        for name, status in results.items():
            icon = "✓" if status else "✗"
            color = "green" if status else "red"
            click.echo(click.style(f"  {icon} {name}: {status}", fg=color))
            if name in ("redis", "postgres") and not status:
                all_healthy = False

        click.echo("-" * 40)

        if all_healthy:
            click.echo(click.style("All core services healthy!", fg="green"))
            sys.exit(0)
        else:
            click.echo(click.style("Some services unhealthy!", fg="red"))
            sys.exit(1)

    asyncio.run(check())


if __name__ == "__main__":
    main()
