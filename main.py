#!/usr/bin/env python3
"""
Registration Execution Coordinator - Main Entry Point

Usage:
    python main.py plans add --user USER --session SESSION --detect-url URL
    python main.py poll | watch | sweep
    python main.py serve
"""
import asyncio
import logging
import sys
from datetime import datetime

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

from campreg.common.config import load_config, ConfigurationError
from campreg.common.models import (
    RegistrationPlan,
    PlanStatus,
    OpenStrategy,
    Reservation,
    UserProfile,
)
from campreg.common.scheduler import PrecisionScheduler
from campreg.common.store import StateStore, mask_phone
from campreg.watch.window import SeasonCalendar, TargetWindowResolver

console = Console()


def setup_logging(level: str = "INFO", log_file: str = None):
    """Configure logging"""
    handlers = [RichHandler(console=console, rich_tracebacks=True)]

    if log_file:
        handlers.append(logging.FileHandler(log_file))

    logging.basicConfig(
        level=getattr(logging, level.upper()),
        format="%(message)s",
        handlers=handlers
    )


def open_store(cfg) -> StateStore:
    store = StateStore(cfg.storage.state_file)
    store.load()
    return store


def build_coordinator(cfg):
    from campreg.coordinator import Coordinator
    return Coordinator.build(cfg, store=open_store(cfg))


@click.group()
@click.option("--config", "-c", default=None, help="Path to config file")
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose logging")
@click.pass_context
def cli(ctx, config, verbose):
    """
    Registration Execution Coordinator

    Watches for registration to open, hands bot challenges to the user,
    and settles reservations.
    """
    ctx.ensure_object(dict)

    try:
        cfg = load_config(config)
        ctx.obj["config"] = cfg
        setup_logging(
            level="DEBUG" if verbose else cfg.logging.level,
            log_file=cfg.logging.file
        )
    except FileNotFoundError:
        console.print(f"[red]Config file not found: {config}[/red]")
        console.print("Create a config file from config/config.example.yaml")
        sys.exit(1)
    except ConfigurationError as e:
        console.print(f"[red]{e}[/red]")
        sys.exit(1)
    except Exception as e:
        console.print(f"[red]Error loading config: {e}[/red]")
        sys.exit(1)


# ========================================
# Plans
# ========================================

@cli.group()
def plans():
    """Manage registration plans"""
    pass


@plans.command("add")
@click.option("--user", "user_id", required=True, help="Owning user id")
@click.option("--session", "session_id", required=True, help="Target session id")
@click.option("--detect-url", default=None, help="Page to watch for registration opening")
@click.option("--open-at", default=None, help="Known open time (ISO 8601)")
@click.option("--timezone", default=None, help="Plan timezone (default from config)")
@click.option(
    "--strategy",
    type=click.Choice([s.value for s in OpenStrategy]),
    default=OpenStrategy.AUTO.value,
)
@click.pass_context
def plans_add(ctx, user_id, session_id, detect_url, open_at, timezone, strategy):
    """Register a new plan"""
    cfg = ctx.obj["config"]
    store = open_store(cfg)

    plan = RegistrationPlan(
        user_id=user_id,
        target_session_id=session_id,
        detect_url=detect_url,
        manual_open_at=datetime.fromisoformat(open_at) if open_at else None,
        timezone=timezone or cfg.window.default_timezone,
        open_strategy=OpenStrategy(strategy),
    )
    if plan.is_watchable and not plan.detect_url:
        console.print("[yellow]⚠️ Watched plans need --detect-url; this plan will be reported as misconfigured[/yellow]")

    asyncio.run(store.add_plan(plan))
    console.print(f"[green]✓ Plan {plan.id} added[/green]")


@plans.command("list")
@click.option("--all", "show_all", is_flag=True, help="Include retired plans")
@click.pass_context
def plans_list(ctx, show_all):
    """List plans with their latest detection"""
    cfg = ctx.obj["config"]
    store = open_store(cfg)

    scheduler = PrecisionScheduler()
    resolver = TargetWindowResolver(SeasonCalendar(cfg.window.season_guesses))

    async def run():
        status = None if show_all else PlanStatus.ACTIVE
        table = Table(title="Registration Plans")
        table.add_column("Plan ID")
        table.add_column("User")
        table.add_column("Session")
        table.add_column("Strategy")
        table.add_column("Status")
        table.add_column("Opens In")
        table.add_column("Last Signal")

        for plan in await store.list_plans(status):
            latest = await store.latest_detection(plan.id)
            window = resolver.resolve(plan, scheduler.now())
            opens_in = scheduler.format_countdown(window.target)
            if window.is_low_confidence:
                opens_in += " (guess)"
            table.add_row(
                plan.id,
                plan.user_id,
                plan.target_session_id,
                plan.open_strategy.value,
                plan.status.value,
                opens_in,
                f"{latest.signal.value} @ {latest.seen_at:%Y-%m-%d %H:%M}" if latest else "-",
            )
        console.print(table)

    asyncio.run(run())


@plans.command("retire")
@click.argument("plan_id")
@click.option("--cancelled", is_flag=True, help="Mark as cancelled instead of done")
@click.pass_context
def plans_retire(ctx, plan_id, cancelled):
    """Stop watching a plan"""
    cfg = ctx.obj["config"]
    store = open_store(cfg)

    if plan_id not in store.plans:
        console.print(f"[red]Unknown plan: {plan_id}[/red]")
        sys.exit(1)

    status = PlanStatus.CANCELLED if cancelled else PlanStatus.DONE
    asyncio.run(store.set_plan_status(plan_id, status))
    console.print(f"[green]✓ Plan {plan_id} retired ({status.value})[/green]")


# ========================================
# Users and reservations
# ========================================

@cli.group()
def users():
    """Manage the local user directory view"""
    pass


@users.command("add")
@click.argument("user_id")
@click.option("--email", default=None)
@click.option("--phone", default=None, help="E.164 phone number")
@click.option("--verified", is_flag=True, help="Phone number is verified")
@click.pass_context
def users_add(ctx, user_id, email, phone, verified):
    """Add or replace a user profile"""
    cfg = ctx.obj["config"]
    store = open_store(cfg)

    user = UserProfile(user_id=user_id, email=email, phone_e164=phone, phone_verified=verified)
    asyncio.run(store.add_user(user))
    console.print(f"[green]✓ User {user_id} saved (phone {mask_phone(phone)})[/green]")


@cli.group()
def reservations():
    """Manage reservations awaiting settlement"""
    pass


@reservations.command("add")
@click.option("--user", "user_id", default=None)
@click.option("--intent", "payment_intent_id", default=None, help="Pre-authorized Stripe PaymentIntent id")
@click.pass_context
def reservations_add(ctx, user_id, payment_intent_id):
    """Record a pending reservation"""
    cfg = ctx.obj["config"]
    store = open_store(cfg)

    reservation = Reservation(user_id=user_id, payment_intent_id=payment_intent_id)
    asyncio.run(store.add_reservation(reservation))
    console.print(f"[green]✓ Reservation {reservation.id} pending[/green]")


# ========================================
# Timers
# ========================================

@cli.command()
@click.pass_context
def poll(ctx):
    """Run one poll tick"""
    cfg = ctx.obj["config"]

    async def run():
        coordinator = build_coordinator(cfg)
        try:
            summary = await coordinator.poller.tick()
        finally:
            await coordinator.aclose()

        console.print(Panel(
            f"Plans: {summary.total}\n"
            f"Polled: {summary.polled}\n"
            f"Skipped: {summary.skipped}\n"
            f"Dispatched: {summary.dispatched}\n"
            f"Errors: {summary.errors}\n"
            f"Misconfigured: {', '.join(summary.misconfigured) or '-'}",
            title="🔍 Poll tick",
            style="blue"
        ))

    asyncio.run(run())


@cli.command()
@click.pass_context
def watch(ctx):
    """Poll and sweep on the configured cadence until interrupted"""
    cfg = ctx.obj["config"]
    scheduler = PrecisionScheduler()
    log = logging.getLogger("campreg.watch")

    async def run():
        coordinator = build_coordinator(cfg)
        console.print(Panel(
            f"⏰ Watching {len(await coordinator.store.list_plans(PlanStatus.ACTIVE))} active plans\n"
            f"Cadence: every {cfg.polling.cadence_seconds}s\n\n"
            f"Press Ctrl+C to stop",
            style="blue"
        ))

        try:
            while True:
                target = scheduler.next_tick(cfg.polling.cadence_seconds)
                if not await scheduler.wait_until(target):
                    break
                try:
                    await coordinator.poller.tick()
                    await coordinator.broker.expire_stale()
                except Exception as e:
                    log.exception(f"Tick failed: {e}")
        finally:
            await coordinator.aclose()

    try:
        asyncio.run(run())
    except KeyboardInterrupt:
        console.print("\n[yellow]Stopped[/yellow]")


@cli.command()
@click.pass_context
def sweep(ctx):
    """Expire stale challenge tickets"""
    cfg = ctx.obj["config"]

    async def run():
        coordinator = build_coordinator(cfg)
        try:
            expired = await coordinator.broker.expire_stale()
        finally:
            await coordinator.aclose()
        console.print(f"[green]✓ Expired {len(expired)} tickets[/green]")

    asyncio.run(run())


@cli.command()
@click.option("--host", default=None)
@click.option("--port", type=int, default=None)
@click.pass_context
def serve(ctx, host, port):
    """Run the HTTP API"""
    import uvicorn
    from campreg.api.server import create_app

    cfg = ctx.obj["config"]
    try:
        app = create_app(cfg, build_coordinator(cfg))
    except ConfigurationError as e:
        console.print(f"[red]{e}[/red]")
        sys.exit(1)

    uvicorn.run(app, host=host or cfg.app.host, port=port or cfg.app.port, log_config=None)


# ========================================
# Checkpoints
# ========================================

@cli.group()
def checkpoints():
    """Inspect executor checkpoints"""
    pass


@checkpoints.command("show")
@click.argument("session_id")
@click.pass_context
def checkpoints_show(ctx, session_id):
    """Show the retained checkpoints of a session"""
    from campreg.challenge.checkpoints import CheckpointStore

    cfg = ctx.obj["config"]
    if not cfg.checkpoints.directory:
        console.print("[yellow]checkpoints.directory is not set; nothing is kept between runs[/yellow]")
        return

    store = CheckpointStore(cfg.checkpoints)
    history = store.history(session_id)
    if not history:
        console.print(f"[yellow]No checkpoints for session {session_id}[/yellow]")
        return

    recoverable = store.restore(session_id)
    table = Table(title=f"Checkpoints for {session_id}")
    table.add_column("ID")
    table.add_column("Step")
    table.add_column("Created")
    table.add_column("Success")
    for checkpoint in history:
        marker = " ⬅ resume" if recoverable and checkpoint.id == recoverable.id else ""
        table.add_row(
            checkpoint.id,
            checkpoint.step_name + marker,
            checkpoint.created_at.strftime("%Y-%m-%d %H:%M:%S %Z"),
            "✓" if checkpoint.success else "✗",
        )
    console.print(table)


@cli.command()
@click.pass_context
def info(ctx):
    """Show current configuration"""
    cfg = ctx.obj["config"]

    console.print(Panel("📋 Current Configuration", style="blue"))

    table = Table(show_header=False)
    table.add_column("Setting", style="cyan")
    table.add_column("Value")

    table.add_row("Base URL", cfg.app.base_url)
    table.add_row("State File", str(cfg.storage.state_file))
    table.add_row("Poll Cadence", f"{cfg.polling.cadence_seconds}s")
    table.add_row("Default Timezone", cfg.window.default_timezone)
    table.add_row("Ticket Lifetime", f"{cfg.challenge.ticket_ttl_minutes} min")
    table.add_row("Resend Throttle", f"{cfg.challenge.resend_interval_seconds}s")
    table.add_row("SMS", "enabled" if cfg.notifications.sms.enabled else "disabled")
    table.add_row("Email", "enabled" if cfg.notifications.email.enabled else "console")
    table.add_row("Payments", "stripe" if cfg.payments.stripe_secret_key else "not configured")
    table.add_row("Executor", cfg.executor.url or "logging only")
    table.add_row("Callback Secret", "set" if cfg.app.callback_secret else "[red]missing[/red]")
    table.add_row("Link Secret", "set" if cfg.app.link_signing_secret else "[red]missing[/red]")

    console.print(table)


if __name__ == "__main__":
    cli()
