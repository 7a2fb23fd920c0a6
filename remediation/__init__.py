"""Automated remediation: allow-list, guardrails, execution."""
from remediation.engine import RemediationEngine
from remediation.executor import ActionExecutor, build_command_table
from remediation.guardrails import ActionRateLimit, CircuitBreaker
from remediation.policy import RemediationPolicy, AllowListEntry
