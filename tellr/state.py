"""Session state aggregation: the role-scoped snapshot of one election.

The snapshot is recomputed from the store on every call, so a client that
missed events can always catch up by fetching it again.
"""

from __future__ import annotations

from .db import Database
from .errors import NotFound
from .models import (
    DisclosureLevel,
    Election,
    ElectionState,
    Participant,
    Round,
    RoundLogEntry,
    RoundResult,
    RoundStatus,
    VoterStatus,
)
from .tally import apply_disclosure, build_tallies, count_ballots, evaluate


async def disclosed_result(
    db: Database, rnd: Round, participants: list[Participant]
) -> RoundResult | None:
    """A revealed round's result, filtered by its disclosure level.

    Returns None for rounds that are not revealed. Call inside a transaction.
    """
    if rnd.status != RoundStatus.REVEALED:
        return None
    ballots = await db.list_ballots(rnd.id)
    tallies = build_tallies(count_ballots(ballots), participants)
    return RoundResult(
        round=rnd,
        tallies=apply_disclosure(tallies, rnd.disclosure_level),
        total_votes=len(ballots),
    )


async def get_election_state(
    db: Database, election_id: str, participant_id: str
) -> ElectionState:
    async with db.transaction(immediate=False):
        election = await db.get_election(election_id)
        requester = await db.get_participant(election_id, participant_id)
        if election is None or requester is None:
            raise NotFound("Election not found")
        return await _build_state(db, election, requester)


async def _build_state(db: Database, election: Election, requester: Participant) -> ElectionState:
    participants = await db.list_participants(election.id)
    rounds = await db.list_rounds(election.id)

    state = ElectionState(
        election=election,
        participants=participants,
        current_participant_id=requester.id,
        is_teller=requester.is_teller,
        total_participants=len(participants),
    )

    active = next((r for r in rounds if r.status.active), None)
    if active is not None:
        if active.status == RoundStatus.VOTING:
            state.current_round = active
        else:
            state.pending_round = active

        receipts = await db.list_receipts(active.id)
        voted = {r.participant_id for r in receipts}
        state.voted_count = len(receipts)
        state.has_voted = requester.id in voted

        if requester.is_teller:
            state.voter_status = [
                VoterStatus(participant_id=p.id, has_voted=p.id in voted)
                for p in participants
            ]
            if active.status == RoundStatus.CLOSED:
                state.pending_result = evaluate(
                    await db.list_ballots(active.id), participants, election.body_size
                )

    for rnd in rounds:
        if rnd.status.active:
            continue
        result = None
        if rnd.disclosure_level not in (None, DisclosureLevel.NONE):
            result = await disclosed_result(db, rnd, participants)
        state.round_log.append(RoundLogEntry(round=rnd, result=result))

    if active is None:
        revealed = [r for r in rounds if r.status == RoundStatus.REVEALED]
        if revealed:
            state.result = await disclosed_result(db, revealed[-1], participants)

    return state
