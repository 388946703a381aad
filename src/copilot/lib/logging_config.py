"""
Logging setup for the copilot core.

Application logs go to the console and a rotating file as JSON lines that
carry the active OpenTelemetry trace and span ids. Governance events
(policy decisions, tool call records, draft transitions, deliberations)
go through AuditLogger to a separate ``audit.jsonl`` so the trail can be
shipped and retained independently of debug output.
"""

import json
import logging
import logging.config
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

from opentelemetry import trace


AUDIT_LOGGER_NAME = "copilot.audit"

# Attributes every LogRecord has; anything else arrived through `extra=`.
_STANDARD_ATTRS = frozenset(vars(logging.LogRecord("", 0, "", 0, "", (), None))) | {"message", "asctime"}


class StructuredFormatter(logging.Formatter):
    """Render records as one JSON object per line."""

    def __init__(self, include_trace: bool = True, extra_fields: Optional[Dict[str, Any]] = None):
        super().__init__()
        self.include_trace = include_trace
        self.extra_fields = extra_fields or {}

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
            "where": f"{record.module}:{record.funcName}:{record.lineno}",
        }
        entry.update(self.extra_fields)

        if self.include_trace:
            entry.update(_trace_ids())

        if record.exc_info and record.exc_info[0] is not None:
            entry["error"] = {
                "type": record.exc_info[0].__name__,
                "detail": str(record.exc_info[1]),
                "stack": self.formatException(record.exc_info),
            }

        entry.update({k: v for k, v in vars(record).items() if k not in _STANDARD_ATTRS})
        return json.dumps(entry, ensure_ascii=False, default=str)


def _trace_ids() -> Dict[str, str]:
    span_context = trace.get_current_span().get_span_context()
    if not span_context.is_valid:
        return {}
    return {
        "trace_id": trace.format_trace_id(span_context.trace_id),
        "span_id": trace.format_span_id(span_context.span_id),
    }


class AuditLogger:
    """Writes governance events to the audit trail.

    Every event carries an ``audit_type`` so downstream tooling can split
    the stream without parsing messages.
    """

    def __init__(self, logger_name: str = AUDIT_LOGGER_NAME):
        self.logger = logging.getLogger(logger_name)

    def _emit(self, audit_type: str, message: str, level: int = logging.INFO, **fields: Any) -> None:
        self.logger.log(level, message, extra={"audit_type": audit_type, **fields})

    def log_system_event(self, event_type: str, result: str, metadata: Optional[Dict[str, Any]] = None) -> None:
        """Process lifecycle (startup, shutdown)."""
        level = logging.ERROR if result == "failed" else logging.INFO
        self._emit("system", f"System {event_type}: {result}", level,
                   event_type=event_type, result=result, metadata=metadata or {})

    def log_session_event(
        self,
        event_type: str,
        session_id: str,
        action: Optional[str] = None,
        result: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None
    ) -> None:
        self._emit("session", f"Session {session_id} {event_type}",
                   event_type=event_type, session_id=session_id, action=action,
                   result=result, metadata=metadata or {})

    def log_policy_event(
        self,
        tool_name: str,
        decision: str,
        reason: str,
        autonomy_mode: str,
        risk_tier: Optional[str] = None,
        session_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None
    ) -> None:
        """Record one policy evaluation; denials go out at WARNING."""
        level = logging.WARNING if decision == "deny" else logging.INFO
        self._emit("policy", f"{decision.upper()} {tool_name} under {autonomy_mode}", level,
                   tool_name=tool_name, decision=decision, reason=reason,
                   autonomy_mode=autonomy_mode, risk_tier=risk_tier,
                   session_id=session_id, metadata=metadata or {})

    def log_tool_event(
        self,
        record_id: str,
        session_id: str,
        tool_name: str,
        decision: str,
        outcome: str,
        acting_persona: Optional[str] = None,
        duration_ms: Optional[int] = None,
        error: Optional[str] = None
    ) -> None:
        """Mirror of a ToolCallRecord appended to a session."""
        level = logging.WARNING if outcome == "failed" else logging.INFO
        self._emit("tool_call", f"{tool_name} {outcome}", level,
                   record_id=record_id, session_id=session_id, tool_name=tool_name,
                   decision=decision, outcome=outcome, acting_persona=acting_persona,
                   duration_ms=duration_ms, tool_error=error)

    def log_draft_event(
        self,
        event_type: str,
        session_id: str,
        draft_id: str,
        tool_name: str,
        status: str,
        note: Optional[str] = None
    ) -> None:
        self._emit("draft", f"Draft {draft_id} {event_type} ({tool_name})",
                   event_type=event_type, session_id=session_id, draft_id=draft_id,
                   tool_name=tool_name, status=status, note=note)

    def log_deliberation_event(
        self,
        session_id: str,
        deliberation_id: str,
        mode: str,
        personas: Dict[str, bool],
        challenge_count: int,
        strategy: str,
        duration_ms: int
    ) -> None:
        """Shape of a finished deliberation: who answered and how it resolved.

        Args:
            personas: Persona id to whether its call succeeded
        """
        succeeded = sum(1 for ok in personas.values() if ok)
        self._emit("deliberation", f"{mode} deliberation: {succeeded}/{len(personas)} personas, {strategy}",
                   session_id=session_id, deliberation_id=deliberation_id, mode=mode,
                   personas=personas, challenge_count=challenge_count,
                   strategy=strategy, duration_ms=duration_ms)


def _rotating_file(path: Path, level: str, max_bytes: int, backups: int) -> Dict[str, Any]:
    return {
        "class": "logging.handlers.RotatingFileHandler",
        "level": level,
        "formatter": "json",
        "filename": str(path),
        "maxBytes": max_bytes,
        "backupCount": backups,
        "encoding": "utf-8",
    }


def setup_logging(config: Dict[str, Any]) -> None:
    """Configure the ``copilot`` logger tree from the logging section of CopilotConfig.

    Args:
        config: ``LoggingConfig.model_dump()`` output
    """
    level = config.get("level", "INFO").upper()
    structured = config.get("format", "structured") == "structured"
    max_bytes = config.get("max_file_size", 10 * 1024 * 1024)
    backups = config.get("backup_count", 5)

    log_dir = Path(config.get("directory", "~/.copilot/logs")).expanduser()
    log_dir.mkdir(parents=True, exist_ok=True)

    app_handlers = ["console", "app_file"]
    logging.config.dictConfig({
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "json": {
                "()": StructuredFormatter,
                "include_trace": config.get("include_trace", True),
                "extra_fields": {
                    "service": "copilot-ensemble",
                    "env": config.get("environment", "development"),
                },
            },
            "plain": {"format": "%(asctime)s %(levelname)-8s %(name)s: %(message)s"},
        },
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "level": level,
                "formatter": "json" if structured else "plain",
                "stream": sys.stderr,
            },
            "app_file": _rotating_file(log_dir / "copilot.log", level, max_bytes, backups),
            # audit keeps twice the history of application logs
            "audit_file": _rotating_file(log_dir / "audit.jsonl", "INFO", max_bytes, backups * 2),
        },
        "loggers": {
            "copilot": {"level": level, "handlers": app_handlers, "propagate": False},
            AUDIT_LOGGER_NAME: {"level": "INFO", "handlers": ["audit_file"], "propagate": False},
            "opentelemetry": {"level": "WARNING", "handlers": app_handlers, "propagate": False},
            "uvicorn": {"level": level, "handlers": app_handlers, "propagate": False},
        },
        "root": {"level": "WARNING", "handlers": ["console"]},
    })

    logging.getLogger(__name__).info(
        "Logging configured",
        extra={"log_level": level, "log_dir": str(log_dir), "structured": structured}
    )


def get_audit_logger() -> AuditLogger:
    return AuditLogger()
