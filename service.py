"""
Caller-facing voting operations.

Every operation takes an explicit ``Actor`` (already authenticated by the
auth collaborator) and reads the active election from storage on each call;
there is no module-level election state.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, List, Optional, Union

from audit import AuditAction, AuditTrail, StorageAuditTrail, audit_event, build_audit_trail
from auth import Actor
from ballot_ledger import BallotLedger
from config import Settings
from election_state import ElectionState, ElectionStore, PublishPolicy, parse_selections
from errors import (
    AlreadyVotedError,
    ConflictError,
    ConsistencyError,
    NotAuthorizedError,
    NotEligibleError,
    NotFoundError,
    PreconditionError,
)
from reconcile import Reconciler
from schemas import (
    BallotAssignment,
    BallotView,
    Election,
    ElectionSetup,
    ReceiptStatus,
    ReconcileReport,
    Selection,
    TallyReport,
    VoteReceipt,
    utcnow,
)
from storage import DuplicateRecordError, Storage
from tally import TallyEngine
from vote_store import MAX_RECEIPT_ATTEMPTS, VoteStore

logger = logging.getLogger(__name__)


class VotingService:
    def __init__(
        self,
        storage: Storage,
        clock: Callable[[], datetime] = utcnow,
        audit: Optional[AuditTrail] = None,
        receipt_bytes: int = 24,
        publish_policy: PublishPolicy = PublishPolicy(),
        reconcile_grace: timedelta = timedelta(minutes=5),
    ):
        self.storage = storage
        self.clock = clock
        self.elections = ElectionStore(storage)
        self.ledger = BallotLedger(storage, clock)
        self.votes = VoteStore(storage, receipt_bytes, clock)
        self.tally = TallyEngine()
        self.audit = audit or StorageAuditTrail(storage)
        self.reconciler = Reconciler(storage, clock)
        self.publish_policy = publish_policy
        self.reconcile_grace = reconcile_grace

    @classmethod
    def from_settings(cls, settings: Settings, storage: Storage, **kwargs) -> "VotingService":
        kwargs.setdefault("audit", build_audit_trail(settings.audit_sink, storage))
        return cls(
            storage,
            receipt_bytes=settings.receipt_bytes,
            publish_policy=PublishPolicy(require_tally=settings.publish_requires_tally),
            reconcile_grace=timedelta(seconds=settings.reconcile_grace_seconds),
            **kwargs,
        )

    def _record(self, action: AuditAction, actor: Optional[Actor] = None, **details: Any) -> None:
        event = audit_event(
            action,
            actor=actor.label if actor else None,
            actor_id=actor.id if actor else None,
            **details,
        )
        self.audit.record(event)

    def record_auth_failure(self, reason: str) -> None:
        self._record(AuditAction.AUTH_FAILED, err=reason)

    @staticmethod
    def _require_admin(actor: Actor) -> None:
        if not actor.is_admin:
            raise NotAuthorizedError()

    def _accepting(self, election_id: Optional[str]) -> ElectionState:
        state = self.elections.require(election_id)
        if not state.is_accepting_ballots(self.clock()):
            raise NotEligibleError(election_id=state.id)
        return state

    # --------- Voter operations ---------

    def request_ballot(self, actor: Actor, election_id: Optional[str] = None) -> BallotView:
        state = self._accepting(election_id)
        assignment, is_new = self.ledger.ensure_assigned(actor.id, state.id)
        self.ledger.check_not_voted(assignment)
        self._record(AuditAction.BALLOT_REQUESTED, actor, election_id=state.id)
        e = state.election
        return BallotView(
            election_id=e.id,
            name=e.name,
            description=e.description,
            contests=e.contests,
            is_new=is_new,
        )

    def submit_vote(self, actor: Actor, election_id: Optional[str],
                    selections: Iterable[Union[Selection, Dict[str, Any]]]) -> VoteReceipt:
        state = self._accepting(election_id)
        parsed = parse_selections(selections)
        state.validate_selections(parsed)

        assignment, _ = self.ledger.ensure_assigned(actor.id, state.id)
        self.ledger.check_not_voted(assignment)
        try:
            receipt = self._record_and_complete(assignment, parsed)
        except ConflictError as exc:
            raise AlreadyVotedError() from exc

        # the receipt stays out of the audit trail
        self._record(AuditAction.VOTE_SUBMITTED, actor, election_id=state.id)
        return VoteReceipt(receipt=receipt)

    def _record_and_complete(self, assignment: BallotAssignment, selections: List[Selection]) -> str:
        if self.storage.supports_transactions:
            return self._record_in_transaction(assignment, selections)
        return self._record_two_phase(assignment, selections)

    def _record_in_transaction(self, assignment: BallotAssignment, selections: List[Selection]) -> str:
        for _ in range(MAX_RECEIPT_ATTEMPTS):
            try:
                with self.storage.transaction() as session:
                    receipt = self.votes.record(assignment.election_id, selections, session=session)
                    self.ledger.mark_voted(assignment, session=session)
                return receipt
            except DuplicateRecordError:
                logger.warning("receipt collision inside transaction, retrying")
        raise DuplicateRecordError("could not allocate a unique receipt")

    def _record_two_phase(self, assignment: BallotAssignment, selections: List[Selection]) -> str:
        election_id = assignment.election_id
        receipt = self.votes.record(election_id, selections, committed=False)
        try:
            self.ledger.mark_voted(assignment)
        except ConflictError as conflict:
            try:
                self.votes.discard_pending(receipt)
            except Exception as exc:
                logger.error("could not withdraw a losing pending vote in election %s", election_id)
                raise ConsistencyError("Could not withdraw a duplicate vote", election_id=election_id) from exc
            raise conflict
        except Exception as exc:
            logger.error("pending vote written but ballot completion failed in election %s", election_id)
            raise ConsistencyError(election_id=election_id) from exc

        try:
            committed = self.votes.commit(receipt)
        except Exception as exc:
            logger.error("ballot completed but vote commit failed in election %s", election_id)
            raise ConsistencyError("Ballot completed but vote not committed", election_id=election_id) from exc
        if not committed:
            raise ConsistencyError("Pending vote disappeared before commit", election_id=election_id)
        return receipt

    def verify_receipt(self, receipt: str) -> ReceiptStatus:
        vote = self.votes.find(receipt)
        if vote is None or not vote.committed:
            raise NotFoundError("Receipt not found")
        return ReceiptStatus(receipt=vote.receipt, election_id=vote.election_id, submitted_at=vote.submitted_at)

    # --------- Results ---------

    def _report(self, election: Election) -> TallyReport:
        results, total = self.tally.compute_with_total(election, self.votes.list_by_election(election.id))
        return TallyReport(election_id=election.id, results=results, total_votes=total, computed_at=self.clock())

    def run_tally(self, actor: Actor, election_id: Optional[str] = None) -> TallyReport:
        self._require_admin(actor)
        state = self.elections.require(election_id)
        report = self._report(state.election)
        if not state.election.is_open:
            self.elections.replace(state.tallied(report.computed_at), state)
        self._record(AuditAction.TALLY_RUN, actor, election_id=state.id, total_votes=report.total_votes)
        return report

    def view_results(self, election_id: Optional[str] = None) -> TallyReport:
        state = self.elections.require(election_id)
        if not state.election.is_published:
            raise PreconditionError("Not published yet", election_id=state.id)
        return self._report(state.election)

    # --------- Admin operations ---------

    def setup_election(self, actor: Actor, payload: Union[ElectionSetup, Dict[str, Any]]) -> Election:
        self._require_admin(actor)
        previous = self.elections.current()
        state = ElectionState.setup(payload, self.clock(), previous)
        self.elections.replace(state, previous)
        self._record(AuditAction.ELECTION_SETUP, actor, election_id=state.id)
        return state.election

    def open_election(self, actor: Actor) -> Election:
        self._require_admin(actor)
        now = self.clock()
        state = self.elections.transition(lambda s: s.opened(now))
        self._record(AuditAction.ELECTION_OPENED, actor, election_id=state.id)
        return state.election

    def close_election(self, actor: Actor) -> Election:
        self._require_admin(actor)
        now = self.clock()
        state = self.elections.transition(lambda s: s.closed(now))
        self._record(AuditAction.ELECTION_CLOSED, actor, election_id=state.id)
        return state.election

    def publish_results(self, actor: Actor) -> Election:
        self._require_admin(actor)
        state = self.elections.transition(lambda s: s.published(self.publish_policy))
        self._record(AuditAction.RESULTS_PUBLISHED, actor, election_id=state.id)
        return state.election

    def reconcile_votes(self, actor: Actor, election_id: Optional[str] = None) -> ReconcileReport:
        self._require_admin(actor)
        state = self.elections.require(election_id)
        return self.reconciler.sweep(state.id, self.reconcile_grace)

    def list_audit_logs(self, actor: Actor, limit: int = 100) -> List[Dict[str, Any]]:
        self._require_admin(actor)
        return self.audit.recent(limit)
