"""Alert system module."""
from alerts.evaluator import Evaluator
from alerts.rules_manager import RulesManager
from alerts.manager import AlertManager, AlertChange, DEGRADED_RULE_ID
from alerts.notifier import Notifier, build_notifier
from alerts.channels import ConsoleChannel, FileChannel, WebhookChannel
