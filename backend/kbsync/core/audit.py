"""
Audit Logging — Sync & Administrative Trail
=============================================
Structured JSON audit events for:
- Sync runs (started, completed, failed)
- Operational controls (manual trigger, cursor reset)
- Draft creation and confidence recalculation

Events go to the stdlib ``audit`` logger, one JSON document per line, so
they can be shipped to a SIEM independently of the application log.
"""

import logging
import json
from datetime import datetime, timezone
from typing import Optional
from enum import Enum
from dataclasses import dataclass, asdict


class AuditEventType(str, Enum):
    """Categories of auditable events."""
    # Sync events
    SYNC_STARTED = "sync.started"
    SYNC_COMPLETED = "sync.completed"
    SYNC_FAILED = "sync.failed"
    SYNC_SKIPPED = "sync.skipped"

    # Operational controls
    CONTROL_TRIGGER = "control.trigger"
    CONTROL_CURSOR_RESET = "control.cursor_reset"
    CONTROL_RECALCULATE = "control.recalculate_confidence"

    # Document events
    DRAFT_CREATED = "draft.created"
    DRAFT_SUPERSEDED = "draft.superseded"

    # Source events
    SOURCE_AUTH_FAILURE = "source.auth_failure"


@dataclass
class AuditEvent:
    """Structured audit event record."""
    event_type: AuditEventType
    timestamp: str
    action: str
    outcome: str  # "success", "failure", "skipped"
    source_id: Optional[str]
    organization_id: Optional[str]
    operation_id: Optional[str]
    resource: Optional[str]
    details: dict

    def to_dict(self) -> dict:
        """Convert to dictionary for logging."""
        data = asdict(self)
        data["event_type"] = self.event_type.value
        return data

    def to_json(self) -> str:
        """Convert to JSON string for structured logging."""
        return json.dumps(self.to_dict(), default=str)


class AuditLogger:
    """Audit logging service with structured JSON output."""

    def __init__(self, logger_name: str = "audit"):
        self._logger = logging.getLogger(logger_name)
        self._logger.setLevel(logging.INFO)
        if not self._logger.handlers:
            handler = logging.StreamHandler()
            handler.setFormatter(logging.Formatter("%(message)s"))
            self._logger.addHandler(handler)

    def log(
        self,
        event_type: AuditEventType,
        action: str,
        outcome: str = "success",
        source_id: Optional[str] = None,
        organization_id: Optional[str] = None,
        operation_id: Optional[str] = None,
        resource: Optional[str] = None,
        details: Optional[dict] = None,
    ) -> AuditEvent:
        """Log an audit event and return it."""
        event = AuditEvent(
            event_type=event_type,
            timestamp=datetime.now(timezone.utc).isoformat(),
            action=action,
            outcome=outcome,
            source_id=source_id,
            organization_id=organization_id,
            operation_id=operation_id,
            resource=resource,
            details=details or {},
        )

        log_level = logging.WARNING if outcome == "failure" else logging.INFO
        self._logger.log(log_level, event.to_json())
        return event


_audit_logger = AuditLogger()


def audit_log(event_type: AuditEventType, action: str, **kwargs) -> AuditEvent:
    """Quick audit log function."""
    return _audit_logger.log(event_type, action, **kwargs)
