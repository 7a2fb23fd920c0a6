"""Notifier: fans structured events out to channels."""
import logging

logger = logging.getLogger("mysqlwatch.alerts.notifier")


class Notifier:
    def __init__(self, channels=None):
        self.channels = list(channels or [])

    def add_channel(self, channel):
        self.channels.append(channel)

    def emit(self, event):
        """Deliver to every channel; one failing channel never blocks the rest."""
        logger.debug(f"Event {event.summary()}")
        delivered = 0
        for channel in self.channels:
            try:
                channel.send(event)
                delivered += 1
            except Exception as e:
                logger.warning(f"Channel {type(channel).__name__} dispatch error for "
                               f"alert_id={event.alert_id}: {e}")
        return delivered


def build_notifier(config):
    """Create the notifier and its channels from the `notifications` config."""
    from alerts.channels import ConsoleChannel, FileChannel, WebhookChannel

    cfg = config.get("notifications", {})
    channels = []
    if cfg.get("console", True):
        channels.append(ConsoleChannel(min_severity=cfg.get("console_min_severity", "WARN")))
    if cfg.get("file"):
        channels.append(FileChannel(cfg["file"]))
    webhook = cfg.get("webhook") or {}
    if webhook.get("enabled") and webhook.get("url"):
        channels.append(WebhookChannel.from_config(webhook))
    return Notifier(channels)
