from typing import Iterable

from schemas import AnonymousVote, Election, TallyResult


class TallyEngine:
    """Counts selections per contest and candidate.

    Every known candidate starts at zero. Selections for unknown contests and
    unknown candidate ids are skipped, which tolerates schema edits between
    voting and counting. Counts are plain sums, so input order never matters.
    """

    def compute(self, election: Election, votes: Iterable[AnonymousVote]) -> TallyResult:
        return self.compute_with_total(election, votes)[0]

    def compute_with_total(self, election: Election, votes: Iterable[AnonymousVote]):
        results: TallyResult = {
            contest.id: {candidate.id: 0 for candidate in contest.candidates}
            for contest in election.contests
        }
        total = 0
        for vote in votes:
            total += 1
            for selection in vote.selections:
                counts = results.get(selection.contest_id)
                if counts is None:
                    continue
                for cid in selection.selected_candidate_ids:
                    if cid in counts:
                        counts[cid] += 1
        return results, total
