"""Shared pytest configuration for the Hearsay test suite.

Puts the project root on sys.path so tests import source modules (db,
reputation, finalizer, ...) directly, and provides an isolated SQLite store,
a controllable clock and signing identities.
"""

import os
import sys
import tempfile
from pathlib import Path

import pytest

# Add project root to sys.path so `import reputation`, `from api import app`, etc. work
PROJECT_ROOT = str(Path(__file__).resolve().parent.parent)
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

# Never touch the repo's hearsay.db; never start the background finalizer.
_tmp_ctx = tempfile.TemporaryDirectory(prefix="hearsay_test_")
os.environ.setdefault("HEARSAY_DB_PATH", os.path.join(_tmp_ctx.name, "hearsay.db"))
os.environ.setdefault("HEARSAY_ENV", "test")
os.environ.setdefault("HEARSAY_DB_BACKEND", "sqlite")
os.environ.setdefault("HEARSAY_FINALIZER_ENABLED", "0")
os.environ.setdefault("HEARSAY_RATE_LIMIT_REQUESTS", "5000")
os.environ.setdefault("HEARSAY_ADMIN_TOKEN", "")

from db import Database  # noqa: E402
from identity import PROBATION_SEC  # noqa: E402
from services import build_services  # noqa: E402
from signing import (  # noqa: E402
    comment_message,
    delete_message,
    generate_keypair,
    sign,
    submit_message,
    vote_message,
)

T0 = 1_700_000_000.0


class FakeClock:
    """Injectable clock. Time only moves when a test says so."""

    def __init__(self, start: float = T0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> float:
        self.now += seconds
        return self.now


class Actor:
    """An Ed25519 identity that signs the canonical Hearsay messages."""

    def __init__(self):
        self.private_key, self.public_key = generate_keypair()

    def sign(self, message: str) -> str:
        return sign(self.private_key, message)

    def sign_submit(self, content: str) -> str:
        return self.sign(submit_message(content))

    def sign_vote(self, rumor_id, value: bool) -> str:
        return self.sign(vote_message(rumor_id, value))

    def sign_delete(self, rumor_id) -> str:
        return self.sign(delete_message(rumor_id))

    def sign_comment(self, rumor_id, content: str) -> str:
        return self.sign(comment_message(rumor_id, content))


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def db(tmp_path):
    return Database(db_path=str(tmp_path / "hearsay.db"), backend="sqlite")


@pytest.fixture
def hs(db, clock):
    """Every component wired onto one temporary store and the fake clock."""
    return build_services(db, clock=clock)


@pytest.fixture
def actor():
    return Actor


@pytest.fixture
def registered(hs, clock):
    """Factory: register N identities and move the clock past probation."""

    def make(n: int = 1):
        actors = [Actor() for _ in range(n)]
        for a in actors:
            hs.identities.register(a.public_key)
        clock.advance(PROBATION_SEC + 1)
        return actors if n > 1 else actors[0]

    return make


@pytest.fixture
def post(hs):
    """Factory: submit a rumor signed by `creator`."""

    def make(creator: Actor, content: str = "The library closes early on Fridays",
             deadline=None, category=None):
        return hs.rumors.submit(content, creator.public_key, creator.sign_submit(content),
                                category=category, custom_deadline=deadline)

    return make


@pytest.fixture
def vote(hs):
    """Factory: cast a signed vote."""

    def cast(voter: Actor, rumor_id: int, value: bool):
        return hs.votes.submit(rumor_id, voter.public_key, value,
                               voter.sign_vote(rumor_id, value))

    return cast
