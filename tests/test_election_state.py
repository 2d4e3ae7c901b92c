from datetime import timedelta

import pytest

from election_state import ElectionState, ElectionStore, PublishPolicy, parse_selections
from errors import ConflictError, NotFoundError, PreconditionError, ValidationError
from schemas import Selection

from conftest import BOARD, CHAIR, T0


@pytest.fixture
def state(election_payload):
    return ElectionState.setup(election_payload(contests=[CHAIR, BOARD]), T0)


def test_setup_starts_closed_and_unpublished(state):
    e = state.election
    assert e.version == 1
    assert not e.is_open
    assert not e.is_published
    assert [c.id for c in e.contests] == ["C1", "C2"]


def test_setup_replacing_previous_bumps_version_and_changes_id(state, election_payload):
    replacement = ElectionState.setup(election_payload(name="E2"), T0, previous=state.opened(T0))
    assert replacement.version == 3
    assert replacement.id != state.id
    assert not replacement.election.is_open


@pytest.mark.parametrize("payload_change", [
    {"start_at": T0 + timedelta(hours=2), "end_at": T0 + timedelta(hours=1)},
    {"contests": [CHAIR, CHAIR]},
    {"contests": [dict(CHAIR, max_selections=0)]},
    {"contests": [dict(CHAIR, candidates=[{"id": "A", "name": "a"}, {"id": "A", "name": "b"}])]},
])
def test_setup_rejects_inconsistent_configuration(election_payload, payload_change):
    payload = dict(election_payload(), **payload_change)
    with pytest.raises(ValidationError):
        ElectionState.setup(payload, T0)


def test_naive_datetimes_are_treated_as_utc(election_payload):
    payload = election_payload(start=(T0 - timedelta(hours=1)).replace(tzinfo=None))
    state = ElectionState.setup(payload, T0)
    assert state.election.start_at == T0 - timedelta(hours=1)


def test_accepting_requires_open_flag(state):
    assert not state.is_accepting_ballots(T0)
    assert state.opened(T0).is_accepting_ballots(T0)


def test_accepting_window_is_inclusive(state):
    opened = state.opened(T0)
    e = opened.election
    assert opened.is_accepting_ballots(e.start_at)
    assert opened.is_accepting_ballots(e.end_at)
    assert not opened.is_accepting_ballots(e.start_at - timedelta(seconds=1))
    assert not opened.is_accepting_ballots(e.end_at + timedelta(seconds=1))


def test_open_with_future_start_rejects(election_payload):
    state = ElectionState.setup(election_payload(start=T0 + timedelta(hours=1)), T0).opened(T0)
    assert not state.is_accepting_ballots(T0)


def test_transitions_produce_new_snapshots(state):
    opened = state.opened(T0)
    closed = opened.closed(T0)
    assert (state.version, opened.version, closed.version) == (1, 2, 3)
    assert state.election.is_open is False
    assert opened.election.is_open is True
    assert closed.election.closed_at == T0


def test_reopen_clears_publication(state):
    published = state.opened(T0).closed(T0).tallied(T0).published()
    assert published.election.is_published
    reopened = published.opened(T0)
    assert not reopened.election.is_published
    assert reopened.election.tallied_at is None


def test_publish_requires_closed(state):
    with pytest.raises(PreconditionError):
        state.opened(T0).tallied(T0).published()


def test_publish_requires_tally_by_default(state):
    closed = state.opened(T0).closed(T0)
    with pytest.raises(PreconditionError):
        closed.published()
    assert closed.published(PublishPolicy(require_tally=False)).election.is_published


def test_validate_accepts_partial_ballot(state):
    state.validate_selections([Selection(contest_id="C2", selected_candidate_ids=["X", "Z"])])
    state.validate_selections([])


@pytest.mark.parametrize("selections, message", [
    ([{"contest_id": "C9", "selected_candidate_ids": ["A"]}], "Unknown contest"),
    ([{"contest_id": "C1", "selected_candidate_ids": ["Q"]}], "Unknown candidate"),
    ([{"contest_id": "C1", "selected_candidate_ids": ["A", "B"]}], "Too many selections"),
    ([{"contest_id": "C2", "selected_candidate_ids": ["X", "X"]}], "Duplicate candidate in selection"),
    ([{"contest_id": "C1", "selected_candidate_ids": ["A"]},
      {"contest_id": "C1", "selected_candidate_ids": ["B"]}], "Contest selected more than once"),
])
def test_validate_rejects(state, selections, message):
    with pytest.raises(ValidationError) as info:
        state.validate_selections(parse_selections(selections))
    assert info.value.message == message


def test_parse_selections_rejects_malformed():
    with pytest.raises(ValidationError):
        parse_selections([{"selected_candidate_ids": ["A"]}])
    with pytest.raises(ValidationError):
        parse_selections(None)


def test_store_requires_configured_election(storage):
    with pytest.raises(NotFoundError):
        ElectionStore(storage).require()


def test_store_rejects_unknown_election_id(storage, state):
    store = ElectionStore(storage)
    store.replace(state, None)
    assert store.require(state.id).id == state.id
    with pytest.raises(NotFoundError):
        store.require("nope")


def test_store_replace_is_compare_and_set(storage, state):
    store = ElectionStore(storage)
    store.replace(state, None)
    store.replace(state.opened(T0), state)
    with pytest.raises(ConflictError):
        store.replace(state.closed(T0), state)
    assert store.current().election.is_open
