"""Tally engine: ballots -> ranked tallies -> majority verdict.

Pure functions, no I/O. Abstentions are counted under the ``None`` key and
rank alongside real candidates, but only real candidates can hold a majority.
"""

from __future__ import annotations

from collections.abc import Iterable

from .models import Ballot, DisclosureLevel, MajorityVerdict, Participant, VoteTally

UNKNOWN_CANDIDATE = "Unknown"


def count_ballots(ballots: Iterable[Ballot]) -> dict[str | None, int]:
    counts: dict[str | None, int] = {}
    for ballot in ballots:
        counts[ballot.candidate_id] = counts.get(ballot.candidate_id, 0) + 1
    return counts


def _rank_key(tally: VoteTally) -> tuple:
    # count desc, real candidates before abstain, then candidate id
    return (-(tally.count or 0), tally.is_abstain, tally.candidate_id or "")


def build_tallies(
    counts: dict[str | None, int],
    participants: Iterable[Participant],
) -> list[VoteTally]:
    """Turn raw counts into tallies sorted by count, highest first."""
    names = {p.id: p.name for p in participants}
    tallies = [
        VoteTally(
            candidate_id=candidate_id,
            candidate_name=names.get(candidate_id, UNKNOWN_CANDIDATE) if candidate_id else None,
            count=count,
        )
        for candidate_id, count in counts.items()
    ]
    tallies.sort(key=_rank_key)
    return tallies


def majority_base(total_votes: int, body_size: int | None) -> int:
    """The configured body size wins over the number of ballots cast."""
    return body_size if body_size else total_votes


def majority_threshold(base: int) -> int:
    return base // 2 + 1


def has_majority(top_count: int, base: int) -> bool:
    """Strictly more than half of ``base``."""
    return top_count > base / 2


def top_candidates(tallies: list[VoteTally]) -> list[VoteTally]:
    """Every entry sharing the highest count, abstain included."""
    if not tallies:
        return []
    top = max(t.count or 0 for t in tallies)
    return [t for t in tallies if (t.count or 0) == top]


def leading_candidate_count(tallies: list[VoteTally]) -> int:
    """Highest count among real candidates; abstain cannot win."""
    return max((t.count or 0 for t in tallies if not t.is_abstain), default=0)


def evaluate(
    ballots: list[Ballot],
    participants: list[Participant],
    body_size: int | None,
) -> MajorityVerdict:
    """Full verdict for a sealed round."""
    tallies = build_tallies(count_ballots(ballots), participants)
    base = majority_base(len(ballots), body_size)
    return MajorityVerdict(
        tallies=tallies,
        total_votes=len(ballots),
        majority_threshold=majority_threshold(base),
        has_majority=has_majority(leading_candidate_count(tallies), base),
        body_size=body_size,
    )


def apply_disclosure(
    tallies: list[VoteTally],
    level: DisclosureLevel | None,
) -> list[VoteTally]:
    """Filter tallies down to what participants may see at ``level``.

    ``None`` (not revealed) and ``NONE`` both disclose nothing.
    """
    if level == DisclosureLevel.ALL:
        return list(tallies)
    if level == DisclosureLevel.TOP:
        return top_candidates(tallies)
    if level == DisclosureLevel.TOP_NO_COUNT:
        # names the majority holder, even when more ballots abstained
        lead = leading_candidate_count(tallies)
        return [
            VoteTally(candidate_id=t.candidate_id, candidate_name=t.candidate_name, count=None)
            for t in tallies
            if lead and not t.is_abstain and t.count == lead
        ]
    return []
