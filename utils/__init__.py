"""Utility modules for mysqlwatch."""
from utils.logger import setup_logging
from utils.formatters import format_value, format_compact, format_duration, format_timestamp, time_ago
from utils.errors import (
    MonitorError, SourceUnavailable, ConfigurationError, GuardrailTripped,
    RemediationFailed, AlertingDegraded, StoreUnavailable, StoreConflict, CollaboratorError,
    AlertNotFound, InvalidTransition,
)
