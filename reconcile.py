"""
Sweep for votes left pending by an interrupted two-phase submission.

A pending vote cannot be traced back to a voter, so the sweep works on
counts only. With V voted assignments, C committed votes and P stale
pending votes for one election:

- V - C == P: every pending vote belongs to a completed ballot, commit them.
- V - C == 0: no completed ballot is missing its vote, discard them.
- anything else is ambiguous and left for an operator.

Only pending votes whose ``pending_since`` is older than the grace period are
considered, so in-flight submissions are not touched.
"""

import logging
from datetime import datetime, timedelta
from typing import Callable

from schemas import ReconcileReport, utcnow
from storage import Storage

logger = logging.getLogger(__name__)


class Reconciler:
    def __init__(self, storage: Storage, clock: Callable[[], datetime] = utcnow):
        self.storage = storage
        self.clock = clock

    def sweep(self, election_id: str, grace: timedelta) -> ReconcileReport:
        cutoff = self.clock() - grace
        pending = [
            doc["receipt"]
            for doc in self.storage.iter_votes(election_id, committed=False)
            if (doc.get("pending_since") or doc["submitted_at"]) <= cutoff
        ]
        fresh_pending = self.storage.count_votes(election_id, committed=False) - len(pending)
        voted = self.storage.count_voted_assignments(election_id)
        committed_votes = self.storage.count_votes(election_id, committed=True)
        report = ReconcileReport(
            election_id=election_id,
            voted_assignments=voted,
            committed_votes=committed_votes,
            stale_pending=len(pending),
        )
        if not pending:
            return report

        missing = voted - committed_votes
        if fresh_pending:
            report.ambiguous = True
        elif missing == len(pending):
            report.committed = sum(1 for r in pending if self.storage.set_vote_committed(r))
        elif missing == 0:
            report.discarded = sum(1 for r in pending if self.storage.delete_pending_vote(r))
        else:
            report.ambiguous = True

        if report.ambiguous:
            logger.error(
                "election %s: %d stale pending votes, %d completed ballots without a vote; manual review needed",
                election_id, len(pending), missing,
            )
        else:
            logger.warning(
                "election %s: reconciled pending votes (committed=%d, discarded=%d)",
                election_id, report.committed, report.discarded,
            )
        return report
