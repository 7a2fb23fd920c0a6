"""Formatting utilities for display."""
from datetime import datetime, timezone


def format_value(value, decimals=2):
    """Format a metric reading; whole numbers lose their decimals."""
    if value is None:
        return "N/A"
    value = float(value)
    if value.is_integer() and abs(value) < 1e15:
        return f"{int(value):,}"
    return f"{value:,.{decimals}f}"


def format_compact(n):
    """Format number compactly: 1200000 → '1.2M'."""
    if n is None:
        return "N/A"
    n = float(n)
    if abs(n) >= 1_000_000_000:
        return f"{n / 1_000_000_000:.1f}B"
    elif abs(n) >= 1_000_000:
        return f"{n / 1_000_000:.1f}M"
    elif abs(n) >= 1_000:
        return f"{n / 1_000:.1f}K"
    return str(int(n))


def format_duration(seconds):
    """Format a duration: 90 → '1m30s', 7200 → '2h'."""
    if seconds is None:
        return "N/A"
    seconds = int(seconds)
    if seconds < 60:
        return f"{seconds}s"
    if seconds < 3600:
        m, s = divmod(seconds, 60)
        return f"{m}m{s}s" if s else f"{m}m"
    h, rem = divmod(seconds, 3600)
    m = rem // 60
    return f"{h}h{m}m" if m else f"{h}h"


def format_timestamp(ts):
    """Format a datetime to human-readable string."""
    if ts is None:
        return "N/A"
    if isinstance(ts, str):
        return ts
    return ts.strftime("%Y-%m-%d %H:%M:%S UTC")


def time_ago(dt, now=None):
    """Return human-readable time since dt. E.g., '3h ago', '2d ago'."""
    if dt is None:
        return "N/A"
    now = now or datetime.now(timezone.utc)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    delta = now - dt
    seconds = int(delta.total_seconds())

    if seconds < 60:
        return f"{seconds}s ago"
    elif seconds < 3600:
        return f"{seconds // 60}m ago"
    elif seconds < 86400:
        return f"{seconds // 3600}h ago"
    else:
        return f"{seconds // 86400}d ago"
