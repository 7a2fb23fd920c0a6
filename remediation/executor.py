"""Action executor: the only place mutating SQL is issued.

Each action kind maps to a fixed statement template. Config may override the
templates (e.g. STOP SLAVE on older servers) but every statement must start
with the verb allowed for its kind, so the agent can't be turned into a
generic SQL runner.
"""
import copy
import logging

from models.enums import ActionKind
from utils.errors import CollaboratorError, ConfigurationError

logger = logging.getLogger("mysqlwatch.remediation.executor")

ER_NO_SUCH_THREAD = 1094

DEFAULT_COMMANDS = {
    ActionKind.KILL_CONNECTION: {
        "select": (
            "SELECT ID FROM information_schema.PROCESSLIST"
            " WHERE COMMAND = 'Sleep' AND TIME >= %(idle_seconds)s"
            " AND ID != CONNECTION_ID()"
            " AND USER NOT IN ('system user', 'event_scheduler')"
            " ORDER BY TIME DESC LIMIT %(limit)s"
        ),
        "commands": ["KILL CONNECTION %(id)s"],
    },
    ActionKind.PURGE_BINARY_LOGS: {
        "commands": ["PURGE BINARY LOGS BEFORE DATE_SUB(NOW(), INTERVAL %(retain_hours)s HOUR)"],
    },
    ActionKind.RESTART_REPLICATION: {
        "commands": ["STOP REPLICA", "START REPLICA"],
    },
}

ALLOWED_PREFIXES = {
    ActionKind.KILL_CONNECTION: ("KILL",),
    ActionKind.PURGE_BINARY_LOGS: ("PURGE BINARY LOGS", "PURGE MASTER LOGS"),
    ActionKind.RESTART_REPLICATION: ("STOP REPLICA", "START REPLICA", "STOP SLAVE", "START SLAVE"),
}


def build_command_table(overrides=None):
    """Merge config overrides into the default table, validating verbs."""
    table = copy.deepcopy(DEFAULT_COMMANDS)
    for raw_kind, spec in (overrides or {}).items():
        try:
            kind = ActionKind(str(raw_kind).upper())
        except ValueError:
            raise ConfigurationError(f"remediation.commands: unknown kind {raw_kind!r}") from None
        if kind not in ALLOWED_PREFIXES:
            raise ConfigurationError(f"remediation.commands: {kind.value} takes no commands")
        spec = spec or {}
        entry = table[kind]
        if "commands" in spec:
            commands = spec["commands"]
            entry["commands"] = [commands] if isinstance(commands, str) else list(commands)
        if "select" in spec:
            if kind is not ActionKind.KILL_CONNECTION:
                raise ConfigurationError(f"remediation.commands: {kind.value} has no select")
            entry["select"] = spec["select"]
    for kind, entry in table.items():
        for statement in entry["commands"]:
            if not statement.strip().upper().startswith(ALLOWED_PREFIXES[kind]):
                raise ConfigurationError(
                    f"remediation.commands: {statement!r} not allowed for {kind.value} "
                    f"(must start with one of {', '.join(ALLOWED_PREFIXES[kind])})"
                )
        select = entry.get("select")
        if select is not None and not select.strip().upper().startswith("SELECT"):
            raise ConfigurationError(f"remediation.commands: {kind.value} select must be a SELECT")
    return table


class ActionExecutor:
    def __init__(self, client, commands=None):
        self.client = client
        self.commands = build_command_table(commands)

    @classmethod
    def from_config(cls, config, client):
        return cls(client, config.get("remediation", {}).get("commands"))

    def describe(self, kind, params):
        """The statements an action would run, without touching the server."""
        entry = self.commands.get(kind)
        if entry is None:
            return []
        plan = []
        if entry.get("select"):
            plan.append(entry["select"] % dict(params or {}))
            plan.extend(cmd % {**dict(params or {}), "id": "<each selected ID>"} for cmd in entry["commands"])
        else:
            plan.extend(cmd % dict(params or {}) for cmd in entry["commands"])
        return plan

    def execute(self, kind, params):
        """Run one action against the server; returns details for the audit log."""
        if kind is ActionKind.KILL_CONNECTION:
            return self._kill_connections(params)
        entry = self.commands.get(kind)
        if entry is None:
            raise ValueError(f"no command for {kind}")
        executed = []
        for statement in entry["commands"]:
            self.client.execute(statement, params or None)
            executed.append(statement)
        return {"statements": executed}

    def _kill_connections(self, params):
        entry = self.commands[ActionKind.KILL_CONNECTION]
        rows = self.client.query(entry["select"], params)
        ids = [_row_id(r) for r in rows]
        killed = []
        gone = []
        for conn_id in ids:
            for statement in entry["commands"]:
                try:
                    self.client.execute(statement, {**params, "id": conn_id})
                except CollaboratorError as e:
                    if e.code == ER_NO_SUCH_THREAD:
                        gone.append(conn_id)
                        break
                    raise
            else:
                killed.append(conn_id)
        logger.info(f"Killed {len(killed)} idle connections ({len(gone)} already gone)")
        return {"candidates": ids, "killed": killed, "already_gone": gone}


def _row_id(row):
    for key in ("ID", "id", "Id"):
        if key in row:
            return int(row[key])
    return int(next(iter(row.values())))
