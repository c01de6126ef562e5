# Hearsay Identity Store
# Pseudonymous identities: a base64 Ed25519 public key and its registration
# time. Append-only: rows are never updated or deleted.
#
# Fresh identities sit in probation for PROBATION_SEC before they may vote.

import logging
import math
import os
import time
from dataclasses import asdict, dataclass
from typing import Optional

from audit import AuditAction, AuditLog
from db import Connection, Database, get_database
from errors import ConflictError, NotFoundError, ProbationError, ValidationError
from signing import is_valid_public_key

log = logging.getLogger("hearsay")

PROBATION_SEC = float(os.environ.get("HEARSAY_PROBATION_SEC", "60"))


@dataclass
class Identity:
    public_key: str
    created_at: float

    @property
    def probation_ends_at(self) -> float:
        return self.created_at + PROBATION_SEC

    def to_dict(self) -> dict:
        d = asdict(self)
        d["probation_ends_at"] = self.probation_ends_at
        return d


class IdentityStore:

    def __init__(self, db: Optional[Database] = None,
                 audit: Optional[AuditLog] = None, clock=time.time):
        self.db = db or get_database()
        self.clock = clock
        self.audit = audit or AuditLog(self.db, clock=clock)

    def register(self, public_key: str) -> Identity:
        """Register a new identity. Raises ConflictError if already registered."""
        if not is_valid_public_key(public_key):
            raise ValidationError("public_key must be a base64 Ed25519 public key")

        now = self.clock()
        with self.db.transaction() as conn:
            cur = conn.execute(
                "INSERT INTO users (public_key, created_at) VALUES (?, ?) "
                "ON CONFLICT (public_key) DO NOTHING",
                (public_key, now),
            )
            if cur.rowcount == 0:
                raise ConflictError("Already registered")
            self.audit.append(conn, AuditAction.REGISTER, public_key, None, public_key)

        log.info("REGISTER identity=%s", public_key[:12])
        return Identity(public_key=public_key, created_at=now)

    def get(self, public_key: str) -> Optional[Identity]:
        with self.db.connection() as conn:
            return self.lookup(conn, public_key)

    def lookup(self, conn: Connection, public_key: str) -> Optional[Identity]:
        row = conn.fetchone(
            "SELECT public_key, created_at FROM users WHERE public_key = ?",
            (public_key,),
        )
        if not row:
            return None
        return Identity(public_key=row["public_key"], created_at=row["created_at"])

    def require(self, conn: Connection, public_key: str) -> Identity:
        identity = self.lookup(conn, public_key)
        if identity is None:
            raise NotFoundError("User not found")
        return identity

    def check_probation(self, identity: Identity, now: Optional[float] = None):
        """Raise ProbationError while the identity is still in probation."""
        now = self.clock() if now is None else now
        remaining = identity.probation_ends_at - now
        if remaining > 0:
            raise ProbationError(
                f"Account in probation period: new accounts must wait "
                f"{int(PROBATION_SEC)} seconds before voting",
                probation_ends_at=identity.probation_ends_at,
                seconds_remaining=math.ceil(remaining),
            )
