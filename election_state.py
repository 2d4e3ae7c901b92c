"""
Election configuration, eligibility checks and lifecycle transitions.

``ElectionState`` wraps an immutable ``Election`` snapshot. Admin
transitions return a new snapshot with the version bumped; ``ElectionStore``
persists snapshots with a compare-and-set on that version.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional, Union

from bson import ObjectId
from pydantic import ValidationError as SchemaValidationError

from errors import ConflictError, NotFoundError, PreconditionError, ValidationError
from schemas import Election, ElectionSetup, Selection
from storage import StaleWriteError, Storage

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PublishPolicy:
    require_closed: bool = True
    require_tally: bool = True


def _schema_errors(exc: SchemaValidationError) -> List[Dict[str, Any]]:
    return exc.errors(include_url=False, include_context=False, include_input=False)


def parse_selections(raw: Iterable[Union[Selection, Dict[str, Any]]]) -> List[Selection]:
    try:
        return [s if isinstance(s, Selection) else Selection.model_validate(s) for s in raw]
    except SchemaValidationError as exc:
        raise ValidationError("Malformed selections", errors=_schema_errors(exc)) from exc
    except TypeError as exc:
        raise ValidationError("Selections must be a list") from exc


class ElectionState:
    def __init__(self, election: Election):
        self.election = election

    @property
    def id(self) -> str:
        return self.election.id

    @property
    def version(self) -> int:
        return self.election.version

    def is_accepting_ballots(self, now: datetime) -> bool:
        e = self.election
        return e.is_open and e.start_at <= now <= e.end_at

    def validate_selections(self, selections: Iterable[Selection]) -> None:
        """Raise ``ValidationError`` unless every selection fits the contest schema.

        Contests missing from the submission are abstentions.
        """
        seen = set()
        for sel in selections:
            contest = self.election.contest(sel.contest_id)
            if contest is None:
                raise ValidationError("Unknown contest", contest_id=sel.contest_id)
            if sel.contest_id in seen:
                raise ValidationError("Contest selected more than once", contest_id=sel.contest_id)
            seen.add(sel.contest_id)

            chosen = sel.selected_candidate_ids
            if len(chosen) != len(set(chosen)):
                raise ValidationError("Duplicate candidate in selection", contest_id=sel.contest_id)
            known = set(contest.candidate_ids())
            unknown = [cid for cid in chosen if cid not in known]
            if unknown:
                raise ValidationError(
                    "Unknown candidate", contest_id=sel.contest_id, candidate_ids=unknown
                )
            if len(chosen) > contest.max_selections:
                raise ValidationError(
                    "Too many selections",
                    contest_id=sel.contest_id,
                    max_selections=contest.max_selections,
                    selected=len(chosen),
                )

    # --------- Transitions ---------

    @classmethod
    def setup(cls, payload: Union[ElectionSetup, Dict[str, Any]], now: datetime,
              previous: Optional["ElectionState"] = None) -> "ElectionState":
        try:
            params = payload if isinstance(payload, ElectionSetup) else ElectionSetup.model_validate(payload)
        except SchemaValidationError as exc:
            raise ValidationError("Invalid election setup", errors=_schema_errors(exc)) from exc
        election = Election(
            id=str(ObjectId()),
            version=previous.version + 1 if previous is not None else 1,
            name=params.name,
            description=params.description,
            start_at=params.start_at,
            end_at=params.end_at,
            contests=params.contests,
            created_at=now,
        )
        return cls(election)

    def _next(self, **changes) -> "ElectionState":
        changes["version"] = self.election.version + 1
        return ElectionState(self.election.model_copy(update=changes))

    def opened(self, now: datetime) -> "ElectionState":
        return self._next(is_open=True, is_published=False, opened_at=now, closed_at=None, tallied_at=None)

    def closed(self, now: datetime) -> "ElectionState":
        return self._next(is_open=False, closed_at=now)

    def tallied(self, now: datetime) -> "ElectionState":
        return self._next(tallied_at=now)

    def published(self, policy: PublishPolicy = PublishPolicy()) -> "ElectionState":
        e = self.election
        if policy.require_closed and e.is_open:
            raise PreconditionError("Close the election before publishing results")
        if policy.require_tally and e.tallied_at is None:
            raise PreconditionError("Run the tally before publishing results")
        return self._next(is_published=True)


class ElectionStore:
    """Owns the lifecycle of the active election snapshot."""

    def __init__(self, storage: Storage):
        self.storage = storage

    def current(self) -> Optional[ElectionState]:
        doc = self.storage.get_active_election()
        if doc is None:
            return None
        return ElectionState(Election.model_validate(doc))

    def require(self, election_id: Optional[str] = None) -> ElectionState:
        state = self.current()
        if state is None:
            raise NotFoundError()
        if election_id is not None and state.id != election_id:
            raise NotFoundError("Election not found", election_id=election_id)
        return state

    def replace(self, new: ElectionState, previous: Optional[ElectionState]) -> ElectionState:
        expected = previous.version if previous is not None else None
        try:
            self.storage.replace_active_election(new.election.model_dump(), expected)
        except StaleWriteError as exc:
            raise ConflictError("Election was modified concurrently; retry") from exc
        logger.info("election %s now at version %d", new.id, new.version)
        return new

    def transition(self, step: Callable[[ElectionState], ElectionState]) -> ElectionState:
        current = self.require()
        return self.replace(step(current), current)
