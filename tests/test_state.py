"""Tests for the role-scoped election snapshot."""

import pytest
from tellr.errors import NotFound
from tellr.state import get_election_state


async def snapshot(db, room, who):
    return await get_election_state(db, room.election_id, who.id)


@pytest.mark.asyncio
async def test_idle_election(memory_db, room):
    state = await snapshot(memory_db, room, room.voters[0])
    assert state.current_round is None
    assert state.pending_round is None
    assert state.result is None
    assert state.round_log == []
    assert state.total_participants == 4
    assert not state.is_teller
    assert [p.name for p in state.participants] == ["Tess", "Alice", "Bob", "Carol"]


@pytest.mark.asyncio
async def test_turnout_public_breakdown_teller_only(memory_db, room, rounds):
    a, b, _ = room.voters
    rnd = await rounds.start_round(room.teller, "Chair")
    await rounds.cast_vote(a, rnd.id, b.id)

    voter_view = await snapshot(memory_db, room, b)
    assert voter_view.current_round.id == rnd.id
    assert voter_view.voted_count == 1
    assert not voter_view.has_voted
    assert voter_view.voter_status is None
    assert "voterStatus" not in voter_view.to_dict()

    teller_view = await snapshot(memory_db, room, room.teller)
    assert {s.participant_id: s.has_voted for s in teller_view.voter_status} == {
        room.teller.id: False, a.id: True, b.id: False, room.voters[2].id: False,
    }
    assert (await snapshot(memory_db, room, a)).has_voted


@pytest.mark.asyncio
async def test_pending_round_and_teller_preview(memory_db, room, rounds):
    a, b, c = room.voters
    rnd = await rounds.start_round(room.teller, "Chair")
    await rounds.cast_vote(a, rnd.id, b.id)
    await rounds.cast_vote(c, rnd.id, b.id)
    await rounds.close_voting(room.teller, rnd.id)

    voter_view = await snapshot(memory_db, room, a)
    assert voter_view.current_round is None
    assert voter_view.pending_round.id == rnd.id
    assert voter_view.voted_count == 2
    assert voter_view.pending_result is None
    assert "pendingResult" not in voter_view.to_dict()

    teller_view = await snapshot(memory_db, room, room.teller)
    assert teller_view.pending_result.has_majority
    assert teller_view.pending_result.tallies[0].count == 2


@pytest.mark.asyncio
async def test_latest_result_filtered_and_hidden_during_next_round(memory_db, room, rounds):
    a, b, c = room.voters
    rnd = await rounds.start_round(room.teller, "Chair")
    await rounds.cast_vote(a, rnd.id, b.id)
    await rounds.cast_vote(b, rnd.id, b.id)
    await rounds.cast_vote(c, rnd.id, a.id)
    await rounds.close_voting(room.teller, rnd.id)
    await rounds.end_round(room.teller, rnd.id, "top")

    state = await snapshot(memory_db, room, c)
    assert state.result.round.id == rnd.id
    assert [(t.candidate_id, t.count) for t in state.result.tallies] == [(b.id, 2)]
    assert state.result.total_votes == 3

    await rounds.start_round(room.teller, "Secretary")
    state = await snapshot(memory_db, room, c)
    assert state.result is None
    assert len(state.round_log) == 1


@pytest.mark.asyncio
async def test_round_log_chronological_with_filtered_results(memory_db, room, rounds):
    a, b, c = room.voters

    first = await rounds.start_round(room.teller, "Chair")
    await rounds.cast_vote(a, first.id, b.id)
    await rounds.close_voting(room.teller, first.id)
    await rounds.end_round(room.teller, first.id, "all")

    second = await rounds.start_round(room.teller, "Secretary")
    await rounds.cast_vote(a, second.id, c.id)
    await rounds.cancel_round(room.teller, second.id)

    third = await rounds.start_round(room.teller, "Treasurer")
    await rounds.cast_vote(a, third.id, a.id)
    await rounds.close_voting(room.teller, third.id)
    await rounds.end_round(room.teller, third.id, "none")

    state = await snapshot(memory_db, room, b)
    log = state.round_log
    assert [e.round.office for e in log] == ["Chair", "Secretary", "Treasurer"]
    assert [(t.candidate_id, t.count) for t in log[0].result.tallies] == [(b.id, 1)]
    assert log[1].result is None
    assert log[2].result is None
    # latest revealed round completed with nothing disclosed
    assert state.result.round.id == third.id
    assert state.result.tallies == []


@pytest.mark.asyncio
async def test_snapshot_serializes(memory_db, room, rounds):
    rnd = await rounds.start_round(room.teller, "Chair")
    data = (await snapshot(memory_db, room, room.teller)).to_dict()
    assert data["currentRound"]["id"] == rnd.id
    assert data["pendingRound"] is None
    assert data["isTeller"] is True
    assert data["election"]["code"] == room.code
    assert all("token" not in p for p in data["participants"])


@pytest.mark.asyncio
async def test_unknown_participant(memory_db, room):
    with pytest.raises(NotFound):
        await get_election_state(memory_db, room.election_id, "ghost")
