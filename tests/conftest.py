"""Shared fixtures for tellr tests."""

from dataclasses import dataclass, field

import pytest
import pytest_asyncio

from tellr.models import Participant


@pytest.fixture
def tmp_project(tmp_path):
    """A project directory with .tellr/config.yaml."""
    tellr_dir = tmp_path / ".tellr"
    tellr_dir.mkdir()
    (tellr_dir / "config.yaml").write_text("""\
database:
  path: .tellr/test.db
elections:
  expiry_days: 3
  max_body_size: 500
server:
  port: 4000
  heartbeat_sec: 5
notify:
  webhook_url: ""
  events:
    - round_ended
logging:
  environment: development
""")
    return tmp_path


@pytest_asyncio.fixture
async def db(tmp_path):
    """Real SQLite file database (WAL mode)."""
    from tellr.db import Database
    db = Database(str(tmp_path / "test.db"))
    await db.init()
    yield db
    await db.close()


@pytest_asyncio.fixture
async def memory_db():
    """In-memory database for fast unit tests."""
    from tellr.db import Database
    db = Database(":memory:")
    await db.init()
    yield db
    await db.close()


@pytest_asyncio.fixture
async def notifier():
    from tellr.notifier import Notifier
    n = Notifier()
    yield n
    await n.close()


@pytest_asyncio.fixture
async def elections(memory_db, notifier):
    from tellr.elections import ElectionService
    return ElectionService(memory_db, notifier)


@pytest_asyncio.fixture
async def rounds(memory_db, notifier):
    from tellr.rounds import RoundService
    return RoundService(memory_db, notifier)


@dataclass
class Room:
    """An election with one teller and a few voters, all authenticated."""

    election_id: str
    code: str
    teller: Participant
    voters: list[Participant] = field(default_factory=list)

    @property
    def everyone(self) -> list[Participant]:
        return [self.teller, *self.voters]


async def make_room(elections, voter_names=("Alice", "Bob", "Carol"), body_size=None) -> Room:
    creds = await elections.create_election("Annual General Meeting", "Tess", body_size)
    election, teller = await elections.authenticate(creds.token)
    voters = []
    for name in voter_names:
        joined = await elections.join_election(creds.code, name)
        _, voter = await elections.authenticate(joined.token)
        voters.append(voter)
    return Room(election_id=election.id, code=election.code, teller=teller, voters=voters)


@pytest_asyncio.fixture
async def room(elections):
    return await make_room(elections)
