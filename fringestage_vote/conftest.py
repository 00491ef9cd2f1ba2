"""
conftest.py - Fixtures for engine, client, API and CLI tests.

Test strategy:
- In-memory SQLite (single shared connection) per test
- One small Paillier keypair for the whole test session
- A manual clock so voting windows are deterministic
"""
import pytest

from .client import AudienceClient, TheaterClient
from .config import Settings
from .coprocessor import KeyMaterial
from .engine import build_engine

T0 = 1_700_000_000

THEATER = "0x" + "71" * 20
ALICE = "0x" + "a1" * 20
BOB = "0x" + "b0" * 20
CHARLIE = "0x" + "c4" * 20
OUTSIDER = "0x" + "0b" * 20

HAMLET_RATINGS = [
    (80, 85, 75, 90),
    (90, 88, 82, 85),
    (85, 90, 88, 87),
]


class ManualClock:
    """Block timestamp source that only moves when told to."""

    def __init__(self, now: int = T0):
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, seconds: int) -> int:
        self.now += seconds
        return self.now


@pytest.fixture(scope="session")
def keys():
    """Small keys keep the suite fast; never use this size outside tests."""
    return KeyMaterial.generate(n_length=512)


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def settings(tmp_path):
    return Settings(
        _env_file=None,
        DATABASE_URL="sqlite://",
        FHE_KEY_PATH=str(tmp_path / "keys.json"),
        MIN_VOTES_FOR_DECRYPTION=1,
        DECRYPTION_REQUIRES_END_TIME=False,
    )


@pytest.fixture
def engine(settings, clock, keys):
    engine = build_engine(settings, clock=clock, keys=keys)
    yield engine
    engine.ledger.store.dispose()


@pytest.fixture
def theater(engine, settings):
    return TheaterClient(engine, THEATER, settings)


@pytest.fixture
def voters(engine, settings):
    return [AudienceClient(engine, address, settings) for address in (ALICE, BOB, CHARLIE)]


@pytest.fixture
def hamlet(theater):
    """Session 0, open for one hour from T0."""
    return theater.create_session("Hamlet Preview", "Small Theater", duration=3600)


@pytest.fixture
def voted_hamlet(hamlet, voters):
    for voter, ratings in zip(voters, HAMLET_RATINGS):
        voter.vote(hamlet, *ratings, comment="bravo")
    return hamlet
