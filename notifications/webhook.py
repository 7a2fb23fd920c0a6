"""Webhook client: POSTs notifier events as JSON.

Uses raw HTTP POST via requests.
"""
import logging
import requests

logger = logging.getLogger("mysqlwatch.webhook")


class WebhookClient:
    """Thin wrapper around an incoming-webhook endpoint."""

    def __init__(self, url: str, timeout: float = 10, headers: dict = None):
        self.url = url
        self.timeout = timeout
        self.session = requests.Session()
        self.session.headers.update({"User-Agent": "mysqlwatch/1.0"})
        if headers:
            self.session.headers.update(headers)

    def post_event(self, payload: dict) -> int:
        """POST one event. Returns the HTTP status code."""
        try:
            resp = self.session.post(self.url, json=payload, timeout=self.timeout)
            resp.raise_for_status()
            return resp.status_code
        except requests.RequestException as e:
            logger.error("Webhook post failed: %s", e)
            raise

    def close(self):
        self.session.close()
