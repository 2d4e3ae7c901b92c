"""
Best-effort audit trail.

Recording an event must never fail the action being audited: write errors
are logged here and dropped.
"""

import logging
from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, Dict, List, Optional

from schemas import AuditLog
from storage import Storage

logger = logging.getLogger(__name__)


class AuditAction(str, Enum):
    LOGIN_FAILED = "login_failed"
    LOGIN_SUCCESS = "login_success"
    BALLOT_REQUESTED = "ballot_requested"
    VOTE_SUBMITTED = "vote_submitted"
    ELECTION_SETUP = "election_setup"
    ELECTION_OPENED = "election_opened"
    ELECTION_CLOSED = "election_closed"
    TALLY_RUN = "tally_run"
    RESULTS_PUBLISHED = "results_published"
    AUTH_FAILED = "auth_failed"


def audit_event(action: AuditAction, actor: Optional[str] = None, actor_id: Optional[str] = None,
                **details: Any) -> AuditLog:
    return AuditLog(
        actor=actor or actor_id or "anonymous",
        actor_id=actor_id,
        action=AuditAction(action).value,
        details=details,
    )


class AuditTrail(ABC):
    def record(self, event: AuditLog) -> None:
        try:
            self._write(event)
        except Exception:
            logger.warning("dropped audit event %s", event.action, exc_info=True)

    @abstractmethod
    def _write(self, event: AuditLog) -> None:
        ...

    def recent(self, limit: int = 100) -> List[Dict[str, Any]]:
        return []


class StorageAuditTrail(AuditTrail):
    def __init__(self, storage: Storage):
        self.storage = storage

    def _write(self, event: AuditLog) -> None:
        self.storage.insert_audit(event.model_dump())

    def recent(self, limit: int = 100) -> List[Dict[str, Any]]:
        return self.storage.list_audit(limit)



class LoggingAuditTrail(AuditTrail):
    """Writes events to the ``audit`` logger instead of the database.

    Nothing is kept in process, so ``recent`` is always empty.
    """

    def __init__(self, log: Optional[logging.Logger] = None):
        self.log = log or logger

    def _write(self, event: AuditLog) -> None:
        self.log.info(
            "audit action=%s actor=%s actor_id=%s details=%s",
            event.action, event.actor, event.actor_id, event.details,
        )


def build_audit_trail(sink: str, storage: Storage) -> AuditTrail:
    if sink == "storage":
        return StorageAuditTrail(storage)
    if sink == "log":
        return LoggingAuditTrail()
    raise ValueError(f"unknown AUDIT_SINK {sink!r}")
