"""Session provisioning, authentication and roster commands."""

from __future__ import annotations

import sqlite3
from datetime import datetime, timedelta, timezone

import structlog

from .cleanup import CleanupThrottle
from .codes import generate_code, generate_token, new_id, normalize_code
from .config import ElectionsConfig
from .db import Database, _now, to_timestamp
from .errors import Conflict, Forbidden, NotFound, Unauthorized, ValidationFailed, require_text
from .models import Credentials, Election, ElectionState, Participant, Role
from .notifier import Notifier
from .state import get_election_state

log = structlog.get_logger(__name__)

MAX_ELECTION_NAME = 200
MAX_PARTICIPANT_NAME = 100
_CODE_ATTEMPTS = 5


def require_teller(participant: Participant) -> None:
    if not participant.is_teller:
        raise Forbidden("Teller access required")


class ElectionService:
    """Everything around a session except the round lifecycle."""

    def __init__(
        self,
        db: Database,
        notifier: Notifier,
        settings: ElectionsConfig | None = None,
    ):
        self.db = db
        self.notifier = notifier
        self.settings = settings or ElectionsConfig()
        self.cleanup = CleanupThrottle(self.settings.cleanup_interval_sec)

    # ---------------------------------------------------------------
    # Public commands
    # ---------------------------------------------------------------

    async def create_election(
        self,
        name: str,
        teller_name: str,
        body_size: int | None = None,
    ) -> Credentials:
        """Create a session; its creator becomes the first teller."""
        name = require_text(name, "Election name", max_len=MAX_ELECTION_NAME)
        teller_name = require_text(teller_name, "Name", max_len=MAX_PARTICIPANT_NAME)
        body_size = self._check_body_size(body_size)

        now = datetime.now(timezone.utc)
        expires_at = now + timedelta(days=self.settings.expiry_days)

        for attempt in range(_CODE_ATTEMPTS):
            election = Election(
                id=new_id(),
                code=generate_code(self.settings.code_length),
                name=name,
                body_size=body_size,
                created_at=to_timestamp(now),
                expires_at=to_timestamp(expires_at),
            )
            teller = Participant(
                id=new_id(),
                election_id=election.id,
                name=teller_name,
                role=Role.TELLER,
                token=generate_token(self.settings.token_length),
                created_at=election.created_at,
            )
            try:
                async with self.db.transaction():
                    await self.db.insert_election(election)
                    await self.db.insert_participant(teller)
            except sqlite3.IntegrityError:
                log.debug("election_code_collision", attempt=attempt)
                continue
            log.info("election_created", election_id=election.id, body_size=body_size)
            return Credentials(token=teller.token, participant_id=teller.id, code=election.code)

        raise Conflict("Could not allocate a unique election code, try again")

    async def join_election(self, code: str, name: str) -> Credentials:
        name = require_text(name, "Name", max_len=MAX_PARTICIPANT_NAME)
        code = normalize_code(code or "")

        try:
            async with self.db.transaction():
                election = await self.db.get_election_by_code(code)
                if election is None or self._expired(election):
                    raise NotFound("Election not found")
                participant = Participant(
                    id=new_id(),
                    election_id=election.id,
                    name=name,
                    role=Role.VOTER,
                    token=generate_token(self.settings.token_length),
                )
                await self.db.insert_participant(participant)
        except sqlite3.IntegrityError:
            # the election was swept between lookup and insert
            raise NotFound("Election not found") from None
        self.notifier.publish(election.id, "participant_joined", participant.to_public())

        log.info("participant_joined", election_id=election.id, participant_id=participant.id)
        return Credentials(token=participant.token, participant_id=participant.id, code=election.code)

    # ---------------------------------------------------------------
    # Authentication
    # ---------------------------------------------------------------

    async def authenticate(
        self, token: str | None, code: str | None = None
    ) -> tuple[Election, Participant]:
        """Resolve a bearer token to its participant and election.

        When ``code`` is given the token must belong to that election.
        """
        if not token:
            raise Unauthorized("Missing bearer token")
        async with self.db.transaction(immediate=False):
            participant = await self.db.get_participant_by_token(token)
            if participant is None:
                raise Unauthorized("Invalid token")
            election = await self.db.get_election(participant.election_id)
        if election is None or self._expired(election):
            raise NotFound("Election not found")
        if code is not None and election.code != normalize_code(code):
            raise Unauthorized("Token does not belong to this election")
        return election, participant

    async def rejoin(self, code: str, token: str | None) -> Participant:
        _, participant = await self.authenticate(token, code)
        return participant

    # ---------------------------------------------------------------
    # Authenticated commands
    # ---------------------------------------------------------------

    async def get_state(self, election: Election, participant: Participant) -> ElectionState:
        await self.cleanup.maybe_sweep(self.db)
        return await get_election_state(self.db, election.id, participant.id)

    async def update_name(self, participant: Participant, name: str) -> None:
        name = require_text(name, "Name", max_len=MAX_PARTICIPANT_NAME)
        async with self.db.transaction():
            await self.db.update_participant_name(participant.id, name)
        self.notifier.publish(
            participant.election_id,
            "participant_updated",
            {"id": participant.id, "name": name},
        )

    async def promote_to_teller(self, participant: Participant, target_id: str) -> None:
        require_teller(participant)
        async with self.db.transaction():
            target = await self.db.get_participant(participant.election_id, target_id)
            if target is None:
                raise NotFound("Participant not found")
            await self.db.update_participant_role(target.id, Role.TELLER)
        self.notifier.publish(
            participant.election_id,
            "participant_updated",
            {"id": target.id, "role": Role.TELLER.value},
        )
        log.info("teller_promoted", election_id=participant.election_id, participant_id=target_id)

    async def step_down_as_teller(self, participant: Participant) -> None:
        """Relinquish the teller role; the last teller cannot."""
        require_teller(participant)
        async with self.db.transaction():
            if await self.db.count_tellers(participant.election_id) <= 1:
                raise Conflict("Cannot step down: you are the only teller")
            await self.db.update_participant_role(participant.id, Role.VOTER)
        self.notifier.publish(
            participant.election_id,
            "participant_updated",
            {"id": participant.id, "role": Role.VOTER.value},
        )
        log.info("teller_stepped_down", election_id=participant.election_id, participant_id=participant.id)

    async def set_body_size(self, participant: Participant, body_size: int | None) -> None:
        require_teller(participant)
        body_size = self._check_body_size(body_size)
        async with self.db.transaction():
            await self.db.update_body_size(participant.election_id, body_size)
        self.notifier.publish(
            participant.election_id, "election_updated", {"bodySize": body_size}
        )

    # ---------------------------------------------------------------
    # Helpers
    # ---------------------------------------------------------------

    def _check_body_size(self, body_size: int | None) -> int | None:
        if body_size is None:
            return None
        if isinstance(body_size, bool) or not isinstance(body_size, int):
            raise ValidationFailed("Body size must be a whole number")
        if not 1 <= body_size <= self.settings.max_body_size:
            raise ValidationFailed(
                f"Body size must be between 1 and {self.settings.max_body_size}"
            )
        return body_size

    @staticmethod
    def _expired(election: Election) -> bool:
        return election.expires_at < _now()
