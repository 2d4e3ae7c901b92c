"""
Storage interface consumed by the voting core.

Four record collections (election, ballot assignment, anonymous vote, audit
log) with the primitives the core relies on for correctness:

- unique constraints (``DuplicateRecordError``) for exactly-once creation,
- conditional updates (compare-and-set) for ballot completion and election
  snapshot replacement,
- optional multi-record transactions.

All records cross this boundary as plain dicts.
"""

import copy
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional, Tuple


class StorageError(Exception):
    pass


class DuplicateRecordError(StorageError):
    """A unique constraint rejected the write."""


class StaleWriteError(StorageError):
    """A conditional write found the record in an unexpected state."""


class Storage(ABC):
    supports_transactions = False

    @contextmanager
    def transaction(self):
        """Yield a session handle that groups writes into one atomic unit."""
        raise NotImplementedError("storage does not support transactions")
        yield  # pragma: no cover

    def ping(self) -> Dict[str, Any]:
        return {"backend": type(self).__name__}

    # --------- Election ---------

    @abstractmethod
    def get_active_election(self) -> Optional[Dict[str, Any]]:
        ...

    @abstractmethod
    def replace_active_election(self, doc: Dict[str, Any], expected_version: Optional[int]) -> None:
        """Store ``doc`` as the active election.

        ``expected_version`` None means no election may exist yet. Raises
        ``StaleWriteError`` when the stored version differs.
        """

    # --------- Ballot assignments ---------

    @abstractmethod
    def find_assignment(self, voter_id: str, election_id: str) -> Optional[Dict[str, Any]]:
        ...

    @abstractmethod
    def insert_assignment(self, doc: Dict[str, Any]) -> None:
        """Raises ``DuplicateRecordError`` if (voter_id, election_id) exists."""

    @abstractmethod
    def mark_assignment_voted(
        self, voter_id: str, election_id: str, voted_at: datetime, session=None
    ) -> Optional[Dict[str, Any]]:
        """Set voted_at only where it is still null. Returns the updated
        record, or None when nothing matched."""

    @abstractmethod
    def count_voted_assignments(self, election_id: str) -> int:
        ...

    # --------- Anonymous votes ---------

    @abstractmethod
    def insert_vote(self, doc: Dict[str, Any], session=None) -> None:
        """Raises ``DuplicateRecordError`` if the receipt exists."""

    @abstractmethod
    def find_vote(self, receipt: str) -> Optional[Dict[str, Any]]:
        ...

    @abstractmethod
    def set_vote_committed(self, receipt: str) -> bool:
        """Mark the vote committed and drop its ``pending_since`` time."""

    @abstractmethod
    def delete_pending_vote(self, receipt: str) -> bool:
        """Delete a vote only while it is uncommitted."""

    @abstractmethod
    def iter_votes(self, election_id: str, committed: bool = True) -> Iterator[Dict[str, Any]]:
        """Yield votes ordered by receipt, never by insertion."""

    @abstractmethod
    def count_votes(self, election_id: str, committed: bool = True) -> int:
        ...

    # --------- Audit ---------

    @abstractmethod
    def insert_audit(self, doc: Dict[str, Any]) -> None:
        ...

    @abstractmethod
    def list_audit(self, limit: int = 100) -> List[Dict[str, Any]]:
        ...


class MemoryStorage(Storage):
    """In-process storage with the same constraint semantics as MongoDB.

    The lock stands in for the database engine's per-operation atomicity.
    Meant for tests and single-process development.
    """

    def __init__(self):
        self._lock = threading.RLock()
        self._election: Optional[Dict[str, Any]] = None
        self._assignments: Dict[Tuple[str, str], Dict[str, Any]] = {}
        self._votes: Dict[str, Dict[str, Any]] = {}
        self._audit: List[Dict[str, Any]] = []

    def get_active_election(self):
        with self._lock:
            return copy.deepcopy(self._election)

    def replace_active_election(self, doc, expected_version):
        with self._lock:
            current = self._election
            if expected_version is None:
                if current is not None:
                    raise StaleWriteError("an election already exists")
            elif current is None or current.get("version") != expected_version:
                raise StaleWriteError("election version changed")
            self._election = copy.deepcopy(doc)

    def find_assignment(self, voter_id, election_id):
        with self._lock:
            return copy.deepcopy(self._assignments.get((voter_id, election_id)))

    def insert_assignment(self, doc):
        key = (doc["voter_id"], doc["election_id"])
        with self._lock:
            if key in self._assignments:
                raise DuplicateRecordError("ballot assignment exists")
            self._assignments[key] = copy.deepcopy(doc)

    def mark_assignment_voted(self, voter_id, election_id, voted_at, session=None):
        with self._lock:
            record = self._assignments.get((voter_id, election_id))
            if record is None or record.get("voted_at") is not None:
                return None
            record["voted_at"] = voted_at
            return copy.deepcopy(record)

    def count_voted_assignments(self, election_id):
        with self._lock:
            return sum(
                1 for a in self._assignments.values()
                if a["election_id"] == election_id and a.get("voted_at") is not None
            )

    def insert_vote(self, doc, session=None):
        with self._lock:
            if doc["receipt"] in self._votes:
                raise DuplicateRecordError("receipt exists")
            self._votes[doc["receipt"]] = copy.deepcopy(doc)

    def find_vote(self, receipt):
        with self._lock:
            return copy.deepcopy(self._votes.get(receipt))

    def set_vote_committed(self, receipt):
        with self._lock:
            vote = self._votes.get(receipt)
            if vote is None:
                return False
            vote["committed"] = True
            vote.pop("pending_since", None)
            return True

    def delete_pending_vote(self, receipt):
        with self._lock:
            vote = self._votes.get(receipt)
            if vote is None or vote.get("committed", True):
                return False
            del self._votes[receipt]
            return True

    def iter_votes(self, election_id, committed=True):
        # snapshot under the lock so a single scan never sees a record twice
        with self._lock:
            snapshot = [
                copy.deepcopy(v) for v in self._votes.values()
                if v["election_id"] == election_id and v.get("committed", True) == committed
            ]
        snapshot.sort(key=lambda v: v["receipt"])
        return iter(snapshot)

    def count_votes(self, election_id, committed=True):
        with self._lock:
            return sum(
                1 for v in self._votes.values()
                if v["election_id"] == election_id and v.get("committed", True) == committed
            )

    def insert_audit(self, doc):
        with self._lock:
            self._audit.append(copy.deepcopy(doc))

    def list_audit(self, limit=100):
        with self._lock:
            return [copy.deepcopy(d) for d in reversed(self._audit[-limit:])] if limit > 0 else []
