# Hearsay Vote Store
# One immutable, signed vote per (rumor, voter). Uniqueness is enforced by
# the votes primary key, not by a read-then-write check, so two concurrent
# submissions cannot both succeed.

import logging
import time
from dataclasses import asdict, dataclass
from typing import Optional

from audit import AuditAction, AuditLog
from db import Connection, Database, get_database
from errors import AuthorizationError, ConflictError, ValidationError, VotingClosedError
from identity import IdentityStore
from rumors import RumorStore, parse_rumor_id
from signing import verify_signature, vote_message

log = logging.getLogger("hearsay")


@dataclass
class Vote:
    rumor_id: int
    voter_public_key: str
    vote_value: bool
    voted_at: float

    def to_dict(self) -> dict:
        return asdict(self)


def _row_to_vote(row) -> Vote:
    return Vote(
        rumor_id=int(row["rumor_id"]),
        voter_public_key=row["voter_public_key"],
        vote_value=bool(row["vote_value"]),
        voted_at=row["voted_at"],
    )


def votes_for(conn: Connection, rumor_id: int) -> list[Vote]:
    rows = conn.fetchall(
        """SELECT rumor_id, voter_public_key, vote_value, voted_at
           FROM votes WHERE rumor_id = ?
           ORDER BY voted_at ASC, voter_public_key ASC""",
        (rumor_id,),
    )
    return [_row_to_vote(r) for r in rows]


def has_voted(conn: Connection, rumor_id: int, public_key: str) -> bool:
    row = conn.fetchone(
        "SELECT 1 AS voted FROM votes WHERE rumor_id = ? AND voter_public_key = ?",
        (rumor_id, public_key),
    )
    return row is not None


class VoteStore:

    def __init__(self, db: Optional[Database] = None,
                 rumors: Optional[RumorStore] = None,
                 identities: Optional[IdentityStore] = None,
                 audit: Optional[AuditLog] = None, clock=time.time):
        self.db = db or get_database()
        self.clock = clock
        self.audit = audit or AuditLog(self.db, clock=clock)
        self.identities = identities or IdentityStore(self.db, self.audit, clock=clock)
        self.rumors = rumors or RumorStore(self.db, self.identities, self.audit, clock=clock)

    def submit(self, rumor_id, voter_public_key: str, vote_value: bool,
               signature: str) -> Vote:
        """Cast a vote. Accepted iff now < deadline; a second vote is a ConflictError."""
        rumor_id = parse_rumor_id(rumor_id)
        if not isinstance(vote_value, bool):
            raise ValidationError("vote_value must be a boolean")

        if not verify_signature(vote_message(rumor_id, vote_value), signature,
                                voter_public_key):
            raise AuthorizationError("Invalid signature")

        now = self.clock()
        with self.db.transaction() as conn:
            voter = self.identities.require(conn, voter_public_key)
            self.identities.check_probation(voter, now)

            rumor = self.rumors.require(conn, rumor_id)
            if not rumor.is_open(now):
                raise VotingClosedError("Voting closed", deadline=rumor.deadline)

            cur = conn.execute(
                """INSERT INTO votes (rumor_id, voter_public_key, vote_value, voted_at)
                   VALUES (?, ?, ?, ?)
                   ON CONFLICT (rumor_id, voter_public_key) DO NOTHING""",
                (rumor_id, voter_public_key, vote_value, now),
            )
            if cur.rowcount == 0:
                raise ConflictError("Already voted")

            self.audit.append(conn, AuditAction.VOTE, voter_public_key, rumor_id,
                              f"{rumor_id}:{'true' if vote_value else 'false'}")

        log.info("VOTE rumor=%d voter=%s value=%s", rumor_id, voter_public_key[:12], vote_value)
        return Vote(rumor_id=rumor_id, voter_public_key=voter_public_key,
                    vote_value=vote_value, voted_at=now)

    def list_votes(self, rumor_id) -> list[Vote]:
        rumor_id = parse_rumor_id(rumor_id)
        with self.db.connection() as conn:
            return votes_for(conn, rumor_id)
