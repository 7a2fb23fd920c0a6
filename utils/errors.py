"""Error taxonomy for the monitoring agent."""


class MonitorError(Exception):
    """Base class for agent errors."""


class SourceUnavailable(MonitorError):
    """A metric source could not produce a sample this poll."""
    def __init__(self, metric_id, message):
        super().__init__(f"{metric_id}: {message}")
        self.metric_id = metric_id


class ConfigurationError(MonitorError):
    """Invalid configuration; fatal at startup."""


class GuardrailTripped(MonitorError):
    """A remediation guardrail refused the action. Expected, not a fault."""
    def __init__(self, guardrail, reason):
        super().__init__(f"{guardrail}: {reason}")
        self.guardrail = guardrail
        self.reason = reason


class RemediationFailed(MonitorError):
    """The remediation call errored, timed out or was cancelled."""


class AlertingDegraded(MonitorError):
    """Buffered findings overflowed while the alert store was down.

    Surfaced as the alerting_degraded alert rather than raised.
    """


class StoreUnavailable(MonitorError):
    """The alert store rejected a read or write."""


class StoreConflict(StoreUnavailable):
    """A write broke a store constraint; another process wrote first."""


class CollaboratorError(MonitorError):
    """Database collaborator call failed, with the statement that failed."""
    def __init__(self, message, statement=None, code=None):
        super().__init__(message)
        self.statement = statement
        self.code = code


class AlertNotFound(MonitorError):
    """No alert with the given id."""


class InvalidTransition(MonitorError):
    """Operator asked for a state change the alert can't make."""
