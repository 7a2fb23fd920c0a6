#!/usr/bin/env python3
"""mysqlwatch - MySQL health monitoring and guarded auto-remediation agent."""
import sys
import json
import signal
import logging
import threading
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent))

import click
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from __version__ import __version__
from utils.errors import (
    AlertNotFound, CollaboratorError, ConfigurationError, InvalidTransition, StoreUnavailable,
)

console = Console()
logger = logging.getLogger("mysqlwatch.cli")

EXIT_OK = 0
EXIT_CONFIG = 1
EXIT_COLLABORATOR = 2

_STATE_STYLES = {"OPEN": "red", "ACKNOWLEDGED": "yellow", "RESOLVED": "green"}
_OUTCOME_STYLES = {"SUCCESS": "green", "FAILED": "red", "SKIPPED_GUARDRAIL": "yellow"}


def _init_components(config_path=None, verbose=False):
    """Lazy initialization of all components."""
    from utils.logger import setup_logging
    from config import load_config
    from models.database import Database
    from monitor.mysql_client import MySQLClient
    from monitor.sources import build_sources
    from monitor.collector import Collector
    from monitor.agent import MonitorAgent
    from alerts.rules_manager import RulesManager
    from alerts.evaluator import Evaluator
    from alerts.manager import AlertManager
    from alerts.notifier import build_notifier
    from remediation.policy import RemediationPolicy
    from remediation.executor import ActionExecutor
    from remediation.engine import RemediationEngine

    config = load_config(config_path)
    log_cfg = config.get("logging", {})
    setup_logging("DEBUG" if verbose else log_cfg.get("level", "INFO"), log_cfg.get("file"))

    client = MySQLClient.from_config(config)
    sources, disabled = build_sources(config, client)
    rules = RulesManager.from_config(config, sources, disabled)
    policy = RemediationPolicy.from_config(config, rules.rule_ids() | set(rules.skipped))
    executor = ActionExecutor.from_config(config, client)

    db = Database(config["store"]["path"])
    db.connect()

    shutdown = threading.Event()
    notifier = build_notifier(config)
    collector_cfg = config.get("collector", {})
    collector = Collector(
        sources,
        rules.get_enabled_rules(),
        failure_threshold=collector_cfg.get("failure_threshold", 3),
        buffer_margin=collector_cfg.get("buffer_margin", 2),
    )
    evaluator = Evaluator(rules.get_enabled_rules(), collector.buffers)
    alert_manager = AlertManager.from_config(config, db, notifier, rules.get_all_rules())
    remediation = RemediationEngine(policy, executor, db, notifier, shutdown_event=shutdown)
    agent = MonitorAgent(collector, evaluator, alert_manager, remediation, rules=rules.get_all_rules())

    alert_manager.restore()
    remediation.restore()

    return {
        "config": config, "db": db, "client": client, "sources": sources, "rules": rules,
        "policy": policy, "collector": collector, "alert_manager": alert_manager,
        "remediation": remediation, "agent": agent, "notifier": notifier, "shutdown": shutdown,
    }


@click.group()
@click.option("--config", "config_path", default=None, help="Path to config YAML")
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
@click.version_option(__version__, prog_name="mysqlwatch")
@click.pass_context
def cli(ctx, config_path, verbose):
    """mysqlwatch - MySQL health checks, alerting & guarded auto-remediation."""
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path
    ctx.obj["verbose"] = verbose


def _get_components(ctx):
    if "_components" not in ctx.obj:
        try:
            ctx.obj["_components"] = _init_components(ctx.obj.get("config_path"), ctx.obj.get("verbose"))
        except ConfigurationError as e:
            console.print(f"[red]Configuration error:[/red] {e}")
            ctx.exit(EXIT_CONFIG)
        except StoreUnavailable as e:
            console.print(f"[red]Alert store unavailable:[/red] {e}")
            ctx.exit(EXIT_COLLABORATOR)
    return ctx.obj["_components"]


def _fail(ctx, message, code=EXIT_CONFIG):
    console.print(f"[red]✗[/red] {message}")
    ctx.exit(code)


# ──────────────────────────────────────────────────────
# AGENT
# ──────────────────────────────────────────────────────
@cli.command()
@click.option("--once", is_flag=True, help="Poll every source once, then exit")
@click.pass_context
def run(ctx, once):
    """Run the monitoring agent."""
    c = _get_components(ctx)
    try:
        info = c["client"].ping()
    except CollaboratorError as e:
        _fail(ctx, f"MySQL unreachable: {e}", EXIT_COLLABORATOR)
    console.print(f"[green]✓[/green] Connected to MySQL {info['version']} ({info['latency_ms']}ms)")

    dry_run = c["policy"].dry_run
    console.print(f"Remediation: {'[yellow]dry-run[/yellow]' if dry_run else '[bold red]LIVE[/bold red]'}, "
                  f"{len(c['policy'].entries)} allow-listed rules")

    if once:
        results = [c["agent"].poll(source) for source in c["sources"]]
        c["agent"].tick()
        _print_poll_results(results)
        return

    from monitor.scheduler import AgentScheduler

    scheduler = AgentScheduler(
        c["agent"], c["sources"],
        housekeeping_interval=c["config"]["agent"].get("housekeeping_interval_seconds", 10),
        shutdown_event=c["shutdown"],
    )

    def _handle_signal(signum, frame):
        logger.info(f"Received {signal.Signals(signum).name}, shutting down")
        c["shutdown"].set()

    signal.signal(signal.SIGINT, _handle_signal)
    signal.signal(signal.SIGTERM, _handle_signal)

    scheduler.start()
    console.print(f"[bold]Agent running[/bold] ({len(c['sources'])} sources). Ctrl+C to stop.")
    scheduler.wait()
    scheduler.stop()
    c["remediation"].shutdown()
    c["db"].close()
    console.print("[dim]Agent stopped[/dim]")


def _print_poll_results(results):
    from utils.formatters import format_compact, format_value

    table = Table(title="Poll results", show_header=True)
    table.add_column("Metric", style="cyan")
    table.add_column("Value", justify="right")
    table.add_column("Status")
    for r in results:
        if r.error:
            status = f"[red]failed ({r.failures})[/red] {escape(r.error)}"
            value = "—"
        elif r.sample is None:
            status = "[dim]priming[/dim]"
            value = "—"
        else:
            status = "[green]ok[/green]"
            v = r.sample.value
            value = format_compact(v) if abs(v) >= 1_000_000 else format_value(v)
        table.add_row(r.metric_id, value, status)
    console.print(table)


# ──────────────────────────────────────────────────────
# ALERTS
# ──────────────────────────────────────────────────────
@cli.command()
@click.option("--all", "show_all", is_flag=True, help="Include resolved alerts")
@click.option("--limit", default=50, type=int, help="Max alerts to show")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def status(ctx, show_all, limit, as_json):
    """Show alerts, degraded state and disabled remediation kinds."""
    from utils.formatters import format_timestamp, time_ago
    from alerts.manager import DEGRADED_RULE_ID

    c = _get_components(ctx)
    db = c["db"]
    states = None if show_all else ["OPEN", "ACKNOWLEDGED"]
    alerts = db.get_alerts(states=states, limit=limit)
    disabled = db.get_disabled_kinds()
    degraded = any(a.rule_id == DEGRADED_RULE_ID and a.active for a in alerts)

    if as_json:
        click.echo(json.dumps({
            "alerts": [a.to_dict() for a in alerts],
            "degraded": degraded,
            "disabled_kinds": disabled,
        }, indent=2, default=str))
        return

    if degraded:
        console.print("[bold white on red] ALERTING DEGRADED [/] findings were dropped while the store was down")
    if not alerts:
        console.print("[green]No active alerts[/green]" if not show_all else "[dim]No alerts recorded[/dim]")
    else:
        table = Table(title="Alerts", show_header=True)
        table.add_column("Alert ID", style="cyan")
        table.add_column("Rule")
        table.add_column("State")
        table.add_column("Severity")
        table.add_column("Opened")
        table.add_column("Last seen")
        table.add_column("Count", justify="right")
        table.add_column("Message", max_width=50)
        for a in alerts:
            style = _STATE_STYLES.get(a.state.value, "")
            table.add_row(
                a.alert_id, a.rule_id, f"[{style}]{a.state.value}[/{style}]", a.severity.value,
                format_timestamp(a.opened_at), time_ago(a.last_seen_at),
                str(a.occurrence_count), escape(a.message or ""),
            )
        console.print(table)

    for kind, row in disabled.items():
        console.print(f"[red]Circuit breaker open:[/red] {kind} since {row['disabled_at']} "
                      f"({row['reason']}) - re-enable with [bold]mysqlwatch enable {kind}[/bold]")


@cli.command()
@click.argument("alert_id")
@click.pass_context
def ack(ctx, alert_id):
    """Acknowledge an alert (stops re-notification)."""
    c = _get_components(ctx)
    try:
        change = c["alert_manager"].acknowledge(alert_id)
    except (AlertNotFound, InvalidTransition) as e:
        _fail(ctx, str(e))
    console.print(f"[green]✓[/green] Alert {alert_id} ({change.alert.rule_id}) acknowledged")


@cli.command()
@click.argument("alert_id")
@click.pass_context
def resolve(ctx, alert_id):
    """Resolve an alert manually."""
    c = _get_components(ctx)
    try:
        change = c["alert_manager"].resolve(alert_id)
    except (AlertNotFound, InvalidTransition) as e:
        _fail(ctx, str(e))
    console.print(f"[green]✓[/green] Alert {alert_id} ({change.alert.rule_id}) resolved")


@cli.command()
@click.argument("alert_id")
@click.option("--by", "approved_by", default="", help="Who approved")
@click.pass_context
def approve(ctx, alert_id, approved_by):
    """Approve the held remediation action for an alert."""
    c = _get_components(ctx)
    alert = c["db"].get_alert(alert_id)
    if alert is None:
        _fail(ctx, f"no alert {alert_id}")
    if not alert.active:
        _fail(ctx, f"alert {alert_id} is already resolved")
    entry = c["policy"].entry_for(alert.rule_id)
    if entry is None or not entry.requires_approval:
        console.print(f"[yellow]Rule {alert.rule_id} does not require approval[/yellow]")
    c["db"].approve_alert(alert_id, approved_by)
    console.print(f"[green]✓[/green] Remediation approved for alert {alert_id}; "
                  f"it runs on the next finding for {alert.rule_id}")


@cli.command()
@click.argument("rule_id")
@click.option("--live", is_flag=True, help="Run the remediation for real (still subject to guardrails)")
@click.pass_context
def simulate(ctx, rule_id, live):
    """Force a finding for RULE_ID through alerting and remediation."""
    c = _get_components(ctx)
    if c["rules"].get_rule(rule_id) is None:
        _fail(ctx, f"unknown rule {rule_id}")
    c["remediation"].force_dry_run = not live

    change, action = c["agent"].simulate(rule_id)
    alert = change.alert
    console.print(f"Transition: [bold]{change.transition.value}[/bold]"
                  + (f"  alert_id={alert.alert_id} state={alert.state.value}" if alert else ""))
    if action is None:
        console.print("[dim]No remediation attempted[/dim]")
        return
    _print_actions([action])
    plan = action.details.get("plan")
    if plan:
        console.print("[bold]Would run:[/bold]")
        for statement in plan:
            console.print(f"  {statement}", highlight=False, markup=False)


# ──────────────────────────────────────────────────────
# REMEDIATION
# ──────────────────────────────────────────────────────
@cli.command()
@click.argument("kind")
@click.pass_context
def enable(ctx, kind):
    """Re-enable a remediation kind disabled by the circuit breaker."""
    from models.enums import ActionKind

    try:
        action_kind = ActionKind(kind.upper())
    except ValueError:
        _fail(ctx, f"unknown kind {kind} (one of {', '.join(k.value for k in ActionKind)})")
    c = _get_components(ctx)
    was_disabled = action_kind.value in c["db"].get_disabled_kinds()
    c["remediation"].enable(action_kind)
    if was_disabled:
        console.print(f"[green]✓[/green] {action_kind.value} re-enabled")
    else:
        console.print(f"[dim]{action_kind.value} was not disabled[/dim]")


@cli.command()
@click.option("--limit", default=20, type=int, help="Number of actions")
@click.option("--alert", "alert_id", default=None, help="Only actions for this alert")
@click.pass_context
def actions(ctx, limit, alert_id):
    """Show the remediation audit log."""
    c = _get_components(ctx)
    recent = c["db"].get_recent_actions(limit=limit, alert_id=alert_id)
    if not recent:
        console.print("[dim]No remediation actions recorded[/dim]")
        return
    _print_actions(recent)
    stats = c["db"].get_action_stats(days=7)
    if stats:
        console.print("Last 7 days: " + ", ".join(f"{k}={v}" for k, v in sorted(stats.items())))


def _print_actions(records):
    from utils.formatters import format_timestamp

    table = Table(title="Remediation actions", show_header=True)
    table.add_column("Action ID", style="cyan")
    table.add_column("Alert ID")
    table.add_column("Rule")
    table.add_column("Kind")
    table.add_column("Outcome")
    table.add_column("Dry-run")
    table.add_column("When")
    table.add_column("Reason", max_width=50)
    for a in records:
        style = _OUTCOME_STYLES.get(a.outcome.value, "")
        table.add_row(
            a.action_id, a.alert_id, a.rule_id, a.kind.value,
            f"[{style}]{a.outcome.value}[/{style}]", "yes" if a.dry_run else "no",
            format_timestamp(a.executed_at), escape(a.reason or ""),
        )
    console.print(table)


# ──────────────────────────────────────────────────────
# CONFIGURATION
# ──────────────────────────────────────────────────────
@cli.command("rules")
@click.pass_context
def rules_cmd(ctx):
    """List configured alert rules."""
    from utils.formatters import format_duration

    c = _get_components(ctx)
    policy = c["policy"]

    table = Table(title="Alert Rules", show_header=True)
    table.add_column("ID", style="cyan")
    table.add_column("Condition")
    table.add_column("Consecutive", justify="right")
    table.add_column("Window", justify="right")
    table.add_column("Severity")
    table.add_column("Remediation")
    for r in c["rules"].get_all_rules():
        entry = policy.entry_for(r.rule_id)
        remediation = "—"
        if entry is not None:
            remediation = entry.kind.value
            if entry.requires_approval:
                remediation += " (approval)"
            if policy.is_dry_run(entry):
                remediation += " [dry-run]"
        table.add_row(
            r.rule_id if r.enabled else f"[dim]{r.rule_id}[/dim]",
            r.condition, str(r.consecutive_required), format_duration(r.window_seconds),
            r.severity.value, remediation,
        )
    console.print(table, highlight=False)
    for rule_id in c["rules"].skipped:
        console.print(f"[dim]{rule_id}: skipped (source disabled)[/dim]")


@cli.command()
@click.option("--check", is_flag=True, help="Run each source once and show the value")
@click.pass_context
def sources(ctx, check):
    """List metric sources."""
    c = _get_components(ctx)
    if check:
        results = [c["collector"].poll(source) for source in c["sources"]]
        _print_poll_results(results)
        return

    table = Table(title="Metric Sources", show_header=True)
    table.add_column("Metric", style="cyan")
    table.add_column("Interval", justify="right")
    table.add_column("Source")
    for s in c["sources"]:
        table.add_row(s.metric_id, f"{s.interval_seconds:g}s", s.describe())
    console.print(table, highlight=False)


@cli.command("check-config")
@click.pass_context
def check_config(ctx):
    """Validate configuration without connecting to MySQL."""
    c = _get_components(ctx)
    console.print(f"[green]✓[/green] Configuration OK: {len(c['sources'])} sources, "
                  f"{len(c['rules'].get_all_rules())} rules, {len(c['policy'].entries)} allow-listed")


if __name__ == "__main__":
    cli()
