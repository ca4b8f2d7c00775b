"""Round lifecycle: voting -> closed -> revealed | cancelled.

Only one round per election may be ``voting`` or ``closed`` at a time. Every
transition runs its guard and its writes inside one store transaction, and
the partial unique index on ``rounds`` backs up the single-active-round rule.
Events are published after the transaction commits.
"""

from __future__ import annotations

import sqlite3

import structlog

from .codes import new_id
from .db import Database
from .elections import require_teller
from .errors import Conflict, NotFound, ValidationFailed, require_text
from .models import (
    Ballot,
    DisclosureLevel,
    MajorityVerdict,
    Participant,
    Round,
    RoundStatus,
    VoteReceipt,
)
from .notifier import Notifier
from .state import disclosed_result
from .tally import evaluate, majority_base

log = structlog.get_logger(__name__)

MAX_OFFICE = 100
MAX_DESCRIPTION = 500


def parse_disclosure_level(value: DisclosureLevel | str) -> DisclosureLevel:
    try:
        return DisclosureLevel(value)
    except ValueError:
        choices = ", ".join(level.value for level in DisclosureLevel)
        raise ValidationFailed(f"Disclosure level must be one of: {choices}") from None


class RoundService:
    def __init__(self, db: Database, notifier: Notifier):
        self.db = db
        self.notifier = notifier

    async def start_round(
        self,
        participant: Participant,
        office: str,
        description: str | None = None,
    ) -> Round:
        require_teller(participant)
        office = require_text(office, "Office", max_len=MAX_OFFICE)
        description = require_text(description, "Description", max_len=MAX_DESCRIPTION, required=False)

        rnd = Round(
            id=new_id(),
            election_id=participant.election_id,
            office=office,
            description=description,
            status=RoundStatus.VOTING,
        )
        try:
            async with self.db.transaction():
                if await self.db.get_active_round(participant.election_id) is not None:
                    raise Conflict("A voting round is already in progress")
                await self.db.insert_round(rnd)
        except sqlite3.IntegrityError:
            raise Conflict("A voting round is already in progress") from None

        self.notifier.publish(rnd.election_id, "round_started", rnd.to_dict())
        log.info("round_started", election_id=rnd.election_id, round_id=rnd.id)
        return rnd

    async def cast_vote(
        self,
        participant: Participant,
        round_id: str,
        candidate_id: str | None,
    ) -> None:
        """Record one anonymous ballot plus the voter's receipt.

        ``candidate_id=None`` is an abstention.
        """
        election_id = participant.election_id
        try:
            async with self.db.transaction():
                rnd = await self.db.get_round(election_id, round_id)
                if rnd is None or rnd.status != RoundStatus.VOTING:
                    raise NotFound("Round not found or not accepting votes")

                if await self.db.has_receipt(round_id, participant.id):
                    raise Conflict("You have already voted in this round")

                if candidate_id is not None:
                    if await self.db.get_participant(election_id, candidate_id) is None:
                        raise ValidationFailed("Invalid candidate")

                await self.db.insert_vote(
                    Ballot(id=new_id(), round_id=round_id, candidate_id=candidate_id),
                    VoteReceipt(id=new_id(), round_id=round_id, participant_id=participant.id),
                )
                voted_count = await self.db.count_receipts(round_id)
                total = await self.db.count_participants(election_id)
        except sqlite3.IntegrityError:
            raise Conflict("You have already voted in this round") from None

        self.notifier.publish(
            election_id,
            "vote_status",
            {"roundId": round_id, "votedCount": voted_count, "totalParticipants": total},
        )
        if voted_count >= total:
            # A hint for the teller; the round stays open until closed.
            self.notifier.publish(election_id, "all_voted", {"roundId": round_id})
        log.info("vote_recorded", election_id=election_id, round_id=round_id, voted_count=voted_count)

    async def close_voting(self, participant: Participant, round_id: str) -> MajorityVerdict:
        """Seal the round and return the tally to the calling teller only."""
        require_teller(participant)
        election_id = participant.election_id
        async with self.db.transaction():
            rnd = await self.db.get_round(election_id, round_id)
            if rnd is None or rnd.status != RoundStatus.VOTING:
                raise NotFound("Round not found or not in voting status")
            await self.db.update_round_status(round_id, RoundStatus.CLOSED)

            election = await self.db.get_election(election_id)
            verdict = evaluate(
                await self.db.list_ballots(round_id),
                await self.db.list_participants(election_id),
                election.body_size,
            )

        # Status ping only; the tally stays with the teller.
        self.notifier.publish(election_id, "voting_closed", {"roundId": round_id})
        log.info("voting_closed", election_id=election_id, round_id=round_id, total_votes=verdict.total_votes)
        return verdict

    async def end_round(
        self,
        participant: Participant,
        round_id: str,
        disclosure_level: DisclosureLevel | str,
    ) -> Round:
        """Reveal a closed round at the chosen disclosure level."""
        require_teller(participant)
        level = parse_disclosure_level(disclosure_level)
        election_id = participant.election_id

        async with self.db.transaction():
            rnd = await self.db.get_round(election_id, round_id)
            if rnd is None or rnd.status != RoundStatus.CLOSED:
                raise NotFound("Round not found or voting not closed yet")

            election = await self.db.get_election(election_id)
            participants = await self.db.list_participants(election_id)

            if level == DisclosureLevel.TOP_NO_COUNT:
                ballots = await self.db.list_ballots(round_id)
                verdict = evaluate(ballots, participants, election.body_size)
                if not verdict.has_majority:
                    base = majority_base(len(ballots), election.body_size)
                    base_desc = (
                        f"{election.body_size}-member body"
                        if election.body_size
                        else f"{len(ballots)} votes cast"
                    )
                    raise Conflict(
                        f'Cannot use "top without count" without a majority '
                        f"(>{base // 2} of {base_desc}). "
                        f"Please choose another disclosure option."
                    )

            await self.db.update_round_status(round_id, RoundStatus.REVEALED, level)
            rnd.status = RoundStatus.REVEALED
            rnd.disclosure_level = level
            result = await disclosed_result(self.db, rnd, participants)

        self.notifier.publish(
            election_id,
            "round_ended",
            {"round": rnd.to_dict(), "result": result.to_dict() if result else None},
        )
        log.info("round_revealed", election_id=election_id, round_id=round_id, disclosure_level=level.value)
        return rnd

    async def cancel_round(self, participant: Participant, round_id: str) -> Round:
        """Cancel an open or sealed round and discard its votes."""
        require_teller(participant)
        election_id = participant.election_id
        async with self.db.transaction():
            rnd = await self.db.get_round(election_id, round_id)
            if rnd is None or not rnd.status.active:
                raise NotFound("Round not found or already completed")
            await self.db.update_round_status(round_id, RoundStatus.CANCELLED)
            await self.db.delete_round_votes(round_id)
            rnd.status = RoundStatus.CANCELLED

        self.notifier.publish(election_id, "round_cancelled", {"roundId": round_id})
        log.info("round_cancelled", election_id=election_id, round_id=round_id)
        return rnd
