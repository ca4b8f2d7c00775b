"""Core data models for tellr."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import Enum


class Role(str, Enum):
    TELLER = "teller"
    VOTER = "voter"


class RoundStatus(str, Enum):
    VOTING = "voting"
    CLOSED = "closed"
    REVEALED = "revealed"
    CANCELLED = "cancelled"

    @property
    def active(self) -> bool:
        return self in (RoundStatus.VOTING, RoundStatus.CLOSED)


class DisclosureLevel(str, Enum):
    ALL = "all"
    TOP = "top"
    TOP_NO_COUNT = "top_no_count"
    NONE = "none"


@dataclass
class Election:
    """A session: one multi-round election reached by its join code."""

    id: str
    code: str
    name: str
    body_size: int | None = None
    created_at: str = ""
    expires_at: str = ""

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "code": self.code,
            "name": self.name,
            "bodySize": self.body_size,
            "createdAt": self.created_at,
            "expiresAt": self.expires_at,
        }


@dataclass
class Participant:
    id: str
    election_id: str
    name: str
    role: Role = Role.VOTER
    token: str = ""
    created_at: str = ""

    @property
    def is_teller(self) -> bool:
        return self.role == Role.TELLER

    def to_public(self) -> dict:
        """Public roster entry. The token never leaves the server."""
        return {
            "id": self.id,
            "name": self.name,
            "role": self.role.value,
            "joinedAt": self.created_at,
        }


@dataclass
class Round:
    id: str
    election_id: str
    office: str
    description: str | None = None
    status: RoundStatus = RoundStatus.VOTING
    disclosure_level: DisclosureLevel | None = None
    created_at: str = ""

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "office": self.office,
            "description": self.description,
            "status": self.status.value,
            "disclosureLevel": self.disclosure_level.value if self.disclosure_level else None,
            "createdAt": self.created_at,
        }


@dataclass
class Ballot:
    """An anonymous vote. Holds no reference to the voter."""

    id: str
    round_id: str
    candidate_id: str | None = None  # None = abstain


@dataclass
class VoteReceipt:
    """Proof that a participant voted in a round, without the choice."""

    id: str
    round_id: str
    participant_id: str
    voted_at: str = ""


@dataclass
class VoteTally:
    candidate_id: str | None
    candidate_name: str | None
    count: int | None  # None when the disclosure level withholds counts

    @property
    def is_abstain(self) -> bool:
        return self.candidate_id is None

    def to_dict(self) -> dict:
        return {
            "candidateId": self.candidate_id,
            "candidateName": self.candidate_name,
            "count": self.count,
        }


@dataclass
class MajorityVerdict:
    """Private tally preview handed to the teller when voting closes."""

    tallies: list[VoteTally]
    total_votes: int
    majority_threshold: int
    has_majority: bool
    body_size: int | None = None

    def to_dict(self) -> dict:
        return {
            "tallies": [t.to_dict() for t in self.tallies],
            "totalVotes": self.total_votes,
            "majorityThreshold": self.majority_threshold,
            "hasMajority": self.has_majority,
            "bodySize": self.body_size,
        }


@dataclass
class RoundResult:
    round: Round
    tallies: list[VoteTally] = field(default_factory=list)
    total_votes: int = 0

    def to_dict(self) -> dict:
        return {
            "round": self.round.to_dict(),
            "tallies": [t.to_dict() for t in self.tallies],
            "totalVotes": self.total_votes,
        }


@dataclass
class RoundLogEntry:
    round: Round
    result: RoundResult | None = None

    def to_dict(self) -> dict:
        return {
            "round": self.round.to_dict(),
            "result": self.result.to_dict() if self.result else None,
        }


@dataclass
class VoterStatus:
    participant_id: str
    has_voted: bool


@dataclass
class ElectionState:
    """Role-scoped snapshot of a session, as seen by one participant."""

    election: Election
    participants: list[Participant]
    current_participant_id: str
    is_teller: bool
    current_round: Round | None = None
    pending_round: Round | None = None
    voted_count: int = 0
    total_participants: int = 0
    has_voted: bool = False
    voter_status: list[VoterStatus] | None = None  # tellers only
    pending_result: MajorityVerdict | None = None  # tellers only
    result: RoundResult | None = None
    round_log: list[RoundLogEntry] = field(default_factory=list)

    def to_dict(self) -> dict:
        data = {
            "election": self.election.to_dict(),
            "participants": [p.to_public() for p in self.participants],
            "currentParticipantId": self.current_participant_id,
            "isTeller": self.is_teller,
            "currentRound": self.current_round.to_dict() if self.current_round else None,
            "pendingRound": self.pending_round.to_dict() if self.pending_round else None,
            "votedCount": self.voted_count,
            "totalParticipants": self.total_participants,
            "hasVoted": self.has_voted,
            "result": self.result.to_dict() if self.result else None,
            "roundLog": [entry.to_dict() for entry in self.round_log],
        }
        if self.voter_status is not None:
            data["voterStatus"] = [
                {"participantId": s.participant_id, "hasVoted": s.has_voted}
                for s in self.voter_status
            ]
        if self.pending_result is not None:
            data["pendingResult"] = self.pending_result.to_dict()
        return data


@dataclass
class Credentials:
    """What a caller gets back from creating or joining a session."""

    token: str
    participant_id: str
    code: str = ""

    def to_dict(self) -> dict:
        return asdict(self)
