"""
One ballot per voter per election.

Exactly-once issuance rests on the storage unique constraint over
(voter_id, election_id); exactly-once completion rests on a conditional
update of ``voted_at``. No in-process locking is involved, so the ledger
stays correct with several API processes sharing one database.
"""

import logging
from datetime import datetime
from typing import Callable, Tuple

from errors import AlreadyVotedError, ConflictError
from schemas import BallotAssignment, utcnow
from storage import DuplicateRecordError, Storage

logger = logging.getLogger(__name__)


class BallotLedger:
    def __init__(self, storage: Storage, clock: Callable[[], datetime] = utcnow):
        self.storage = storage
        self.clock = clock

    def ensure_assigned(self, voter_id: str, election_id: str) -> Tuple[BallotAssignment, bool]:
        doc = self.storage.find_assignment(voter_id, election_id)
        if doc is not None:
            return BallotAssignment.model_validate(doc), False

        assignment = BallotAssignment(voter_id=voter_id, election_id=election_id, issued_at=self.clock())
        try:
            self.storage.insert_assignment(assignment.model_dump())
        except DuplicateRecordError:
            # lost the creation race; the winner's record is authoritative
            doc = self.storage.find_assignment(voter_id, election_id)
            if doc is None:
                raise
            return BallotAssignment.model_validate(doc), False
        return assignment, True

    def check_not_voted(self, assignment: BallotAssignment) -> None:
        if assignment.has_voted:
            raise AlreadyVotedError()

    def mark_voted(self, assignment: BallotAssignment, session=None) -> BallotAssignment:
        doc = self.storage.mark_assignment_voted(
            assignment.voter_id, assignment.election_id, self.clock(), session=session
        )
        if doc is None:
            logger.info("ballot completion lost a race for election %s", assignment.election_id)
            raise ConflictError("Ballot already completed")
        return BallotAssignment.model_validate(doc)
