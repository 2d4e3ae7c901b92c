from datetime import timedelta

import pytest

from ballot_ledger import BallotLedger
from errors import ConsistencyError
from reconcile import Reconciler
from schemas import Selection
from vote_store import VoteStore

BALLOT = [Selection(contest_id="C1", selected_candidate_ids=["A"])]
GRACE = timedelta(minutes=5)


def completed_ballot(storage, clock, voter_id):
    ledger = BallotLedger(storage, clock)
    assignment, _ = ledger.ensure_assigned(voter_id, "e1")
    ledger.mark_voted(assignment)


def test_nothing_pending(storage, clock):
    VoteStore(storage, clock=clock).record("e1", BALLOT)
    completed_ballot(storage, clock, "v1")
    report = Reconciler(storage, clock).sweep("e1", GRACE)
    assert report.stale_pending == 0
    assert not report.ambiguous
    assert (report.voted_assignments, report.committed_votes) == (1, 1)


def test_commits_votes_whose_ballots_completed(storage, clock):
    store = VoteStore(storage, clock=clock)
    receipt = store.record("e1", BALLOT, committed=False)
    completed_ballot(storage, clock, "v1")
    clock.advance(minutes=10)

    report = Reconciler(storage, clock).sweep("e1", GRACE)
    assert report.committed == 1
    assert store.find(receipt).committed


def test_discards_votes_without_completed_ballots(storage, clock):
    store = VoteStore(storage, clock=clock)
    store.record("e1", BALLOT)
    completed_ballot(storage, clock, "v1")
    orphan = store.record("e1", BALLOT, committed=False)
    clock.advance(minutes=10)

    report = Reconciler(storage, clock).sweep("e1", GRACE)
    assert report.discarded == 1
    assert store.find(orphan) is None


def test_leaves_fresh_pending_votes_alone(storage, clock):
    store = VoteStore(storage, clock=clock)
    receipt = store.record("e1", BALLOT, committed=False)

    report = Reconciler(storage, clock).sweep("e1", GRACE)
    assert report.stale_pending == 0
    assert not store.find(receipt).committed


def test_mixed_case_is_reported_not_resolved(storage, clock):
    store = VoteStore(storage, clock=clock)
    first = store.record("e1", BALLOT, committed=False)
    second = store.record("e1", BALLOT, committed=False)
    completed_ballot(storage, clock, "v1")
    clock.advance(minutes=10)

    report = Reconciler(storage, clock).sweep("e1", GRACE)
    assert report.ambiguous
    assert (report.committed, report.discarded) == (0, 0)
    assert not store.find(first).committed
    assert not store.find(second).committed


def test_in_flight_submission_makes_sweep_ambiguous(storage, clock):
    store = VoteStore(storage, clock=clock)
    store.record("e1", BALLOT, committed=False)
    clock.advance(minutes=10)
    store.record("e1", BALLOT, committed=False)

    report = Reconciler(storage, clock).sweep("e1", GRACE)
    assert report.stale_pending == 1
    assert report.ambiguous


def test_service_sweep_after_failed_completion(service, open_election, admin, voter, clock, monkeypatch):
    real = service.votes.commit
    monkeypatch.setattr(service.votes, "commit", lambda receipt: False)
    with pytest.raises(ConsistencyError):
        service.submit_vote(voter, None, [{"contest_id": "C1", "selected_candidate_ids": ["B"]}])
    monkeypatch.setattr(service.votes, "commit", real)

    clock.advance(minutes=10)
    report = service.reconcile_votes(admin)
    assert report.committed == 1
    assert service.run_tally(admin).results["C1"] == {"A": 0, "B": 1}
