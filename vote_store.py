"""
Append-only store of anonymous votes keyed by receipt.

Nothing written here carries voter identity. The receipt goes back to the
voter and is never stored next to a voter id.
"""

import logging
import secrets
from datetime import datetime, timezone
from typing import Callable, Iterable, Iterator, Optional

from schemas import AnonymousVote, Selection, utcnow
from storage import DuplicateRecordError, Storage

logger = logging.getLogger(__name__)

MAX_RECEIPT_ATTEMPTS = 5


def generate_receipt(nbytes: int = 24) -> str:
    return secrets.token_hex(nbytes)


def submission_day(moment: datetime) -> datetime:
    """Midnight UTC of the day ``moment`` falls on.

    Votes only carry this coarse time so they cannot be matched to the
    ballot completion or audit timestamps of a particular voter.
    """
    return moment.astimezone(timezone.utc).replace(hour=0, minute=0, second=0, microsecond=0)


class VoteStore:
    def __init__(self, storage: Storage, receipt_bytes: int = 24,
                 clock: Callable[[], datetime] = utcnow):
        if receipt_bytes < 16:
            raise ValueError("receipts need at least 128 bits of entropy")
        self.storage = storage
        self.receipt_bytes = receipt_bytes
        self.clock = clock

    def record(self, election_id: str, selections: Iterable[Selection],
               committed: bool = True, session=None) -> str:
        """Persist a vote and return its receipt.

        Inside a transaction (``session`` given) a receipt collision aborts the
        transaction, so it is raised for the caller to retry the whole unit.
        """
        selections = list(selections)
        attempts = 1 if session is not None else MAX_RECEIPT_ATTEMPTS
        for attempt in range(attempts):
            now = self.clock()
            vote = AnonymousVote(
                receipt=generate_receipt(self.receipt_bytes),
                election_id=election_id,
                selections=selections,
                submitted_at=submission_day(now),
                committed=committed,
                pending_since=None if committed else now,
            )
            try:
                self.storage.insert_vote(vote.model_dump(exclude_none=True), session=session)
            except DuplicateRecordError:
                if session is not None or attempt == attempts - 1:
                    raise
                logger.warning("receipt collision, regenerating")
                continue
            return vote.receipt
        raise DuplicateRecordError("could not allocate a unique receipt")

    def commit(self, receipt: str) -> bool:
        return self.storage.set_vote_committed(receipt)

    def discard_pending(self, receipt: str) -> bool:
        return self.storage.delete_pending_vote(receipt)

    def find(self, receipt: str) -> Optional[AnonymousVote]:
        doc = self.storage.find_vote(receipt)
        if doc is None:
            return None
        return AnonymousVote.model_validate(doc)

    def list_by_election(self, election_id: str) -> Iterator[AnonymousVote]:
        """Lazily yield committed votes, each receipt at most once."""
        seen = set()
        for doc in self.storage.iter_votes(election_id, committed=True):
            receipt = doc["receipt"]
            if receipt in seen:
                continue
            seen.add(receipt)
            yield AnonymousVote.model_validate(doc)
