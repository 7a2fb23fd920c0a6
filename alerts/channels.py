"""Notification channels for agent events."""
import json
import logging
from pathlib import Path
from typing import Protocol, runtime_checkable

from rich.markup import escape

logger = logging.getLogger("mysqlwatch.alerts.channels")

_SEVERITY_ORDER = {"WARN": 0, "CRITICAL": 1}


@runtime_checkable
class EventChannel(Protocol):
    def send(self, event) -> None: ...


def _severity(event):
    return event.severity.value if hasattr(event.severity, "value") else str(event.severity)


def _meets(event, min_severity):
    return _SEVERITY_ORDER.get(_severity(event), 0) >= _SEVERITY_ORDER.get(min_severity, 0)


class ConsoleChannel:
    """Print events to terminal with rich formatting."""

    def __init__(self, min_severity="WARN", console=None):
        from rich.console import Console
        self.min_severity = min_severity
        self.console = console or Console(stderr=True)

    def send(self, event):
        if not _meets(event, self.min_severity):
            return
        severity_styles = {
            "CRITICAL": "bold white on red",
            "WARN": "bold yellow",
        }
        sev = _severity(event)
        style = severity_styles.get(sev, "")
        message = escape(str(event.details.get("message", "")))
        self.console.print(f"[{style}] [{sev}] {event.type.value} {event.rule_id} ({event.alert_id})[/] {message}",
                           highlight=False)


class FileChannel:
    """Append events to a JSON lines log file."""

    def __init__(self, log_path="data/events.jsonl"):
        self.log_path = log_path
        Path(log_path).parent.mkdir(parents=True, exist_ok=True)

    def send(self, event):
        with open(self.log_path, "a") as f:
            f.write(json.dumps(event.to_dict(), default=str) + "\n")


class WebhookChannel:
    """POST events to a webhook endpoint."""

    def __init__(self, client, min_severity="WARN", event_types=None):
        self.client = client
        self.min_severity = min_severity
        self.event_types = set(event_types) if event_types else None

    @classmethod
    def from_config(cls, cfg):
        from notifications.webhook import WebhookClient
        client = WebhookClient(cfg["url"], timeout=cfg.get("timeout", 10), headers=cfg.get("headers"))
        return cls(client, min_severity=cfg.get("min_severity", "WARN"), event_types=cfg.get("event_types"))

    def send(self, event) -> None:
        if not _meets(event, self.min_severity):
            return
        if self.event_types and event.type.value not in self.event_types:
            return
        self.client.post_event(event.to_dict())
