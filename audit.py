# Hearsay Audit Log
# Public, append-only record of every state-changing action.
#
# TAMPER-EVIDENT: each entry carries the SHA-256 hash of the previous entry,
# forming a hash chain. Anyone reading the public log can replay the chain
# and detect a modified or removed entry.
#
# Entries are appended on the caller's transaction, so an entry exists iff
# the action it describes committed. Destructive actions (DELETE) append
# before the destructive statement; constructive ones append after.
#
# On SQLite, BEGIN IMMEDIATE already serialises writers. On PostgreSQL the
# chain head read runs under READ COMMITTED, so appends take a
# transaction-scoped advisory lock first; otherwise two writers could both
# chain onto the same head.

import hashlib
import json
import logging
import time
import uuid
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Optional

from db import Connection, Database, get_database
from errors import ValidationError

log = logging.getLogger("hearsay")

MAX_PAGE_SIZE = 1000
DEFAULT_PAGE_SIZE = 100
CHAIN_LOCK_KEY = 0x48534159  # "HSAY"


class AuditAction(str, Enum):
    REGISTER = "REGISTER"
    SUBMIT = "SUBMIT"
    VOTE = "VOTE"
    DELETE = "DELETE"
    FINALIZE = "FINALIZE"
    COMMENT = "COMMENT"


def content_hash(data) -> str:
    """SHA-256 hex digest of the action payload."""
    if not isinstance(data, (str, bytes)):
        data = json.dumps(data, sort_keys=True, separators=(",", ":"))
    if isinstance(data, str):
        data = data.encode("utf-8")
    return hashlib.sha256(data).hexdigest()


@dataclass
class AuditEntry:
    """Immutable audit record.

    `actor_public_key` is None for system actions (finalization).
    """
    entry_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    action_type: str = ""
    actor_public_key: Optional[str] = None
    target_id: Optional[str] = None
    data_hash: str = ""
    timestamp: float = field(default_factory=time.time)
    prev_hash: str = ""
    entry_hash: str = ""
    seq: int = 0

    def compute_hash(self) -> str:
        """SHA-256 of the canonical entry (excludes entry_hash and seq)."""
        canonical = json.dumps({
            "entry_id": self.entry_id,
            "action_type": self.action_type,
            "actor_public_key": self.actor_public_key,
            "target_id": self.target_id,
            "data_hash": self.data_hash,
            "timestamp": self.timestamp,
            "prev_hash": self.prev_hash,
        }, sort_keys=True, separators=(",", ":"))
        return hashlib.sha256(canonical.encode("utf-8")).hexdigest()

    def to_dict(self) -> dict:
        return asdict(self)

    def to_public_dict(self) -> dict:
        return {
            "action_type": self.action_type,
            "actor_public_key": self.actor_public_key,
            "target_id": self.target_id,
            "data_hash": self.data_hash,
            "timestamp": self.timestamp,
            "prev_hash": self.prev_hash,
            "entry_hash": self.entry_hash,
        }


def _row_to_entry(row) -> AuditEntry:
    return AuditEntry(
        entry_id=row["entry_id"],
        action_type=row["action_type"],
        actor_public_key=row["actor_public_key"],
        target_id=row["target_id"],
        data_hash=row["data_hash"],
        timestamp=row["timestamp"],
        prev_hash=row["prev_hash"] or "",
        entry_hash=row["entry_hash"] or "",
        seq=row["seq"],
    )


class AuditLog:
    """Append-only audit log stored in the audit_log table."""

    def __init__(self, db: Optional[Database] = None, clock=time.time):
        self.db = db or get_database()
        self.clock = clock

    def append(self, conn: Connection, action: AuditAction,
               actor: Optional[str], target_id, data) -> AuditEntry:
        """Append an entry on the caller's transaction, chained to the latest one."""
        if conn.backend == "postgres":
            conn.execute("SELECT pg_advisory_xact_lock(?)", (CHAIN_LOCK_KEY,))
        row = conn.fetchone(
            "SELECT entry_hash FROM audit_log ORDER BY seq DESC LIMIT 1"
        )
        entry = AuditEntry(
            action_type=AuditAction(action).value,
            actor_public_key=actor,
            target_id=None if target_id is None else str(target_id),
            data_hash=content_hash(data),
            timestamp=self.clock(),
            prev_hash=row["entry_hash"] if row and row["entry_hash"] else "",
        )
        entry.entry_hash = entry.compute_hash()

        conn.execute(
            """INSERT INTO audit_log
               (entry_id, action_type, actor_public_key, target_id,
                data_hash, timestamp, prev_hash, entry_hash)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                entry.entry_id, entry.action_type, entry.actor_public_key,
                entry.target_id, entry.data_hash, entry.timestamp,
                entry.prev_hash, entry.entry_hash,
            ),
        )
        log.debug("AUDIT %s actor=%s target=%s", entry.action_type,
                  entry.actor_public_key or "system", entry.target_id)
        return entry

    def list_entries(self, since: Optional[float] = None,
                     limit: int = DEFAULT_PAGE_SIZE,
                     action: Optional[str] = None,
                     target_id=None) -> list[AuditEntry]:
        """Public read: newest first, at most MAX_PAGE_SIZE entries."""
        limit = max(1, min(int(limit or DEFAULT_PAGE_SIZE), MAX_PAGE_SIZE))
        clauses = []
        params = []
        if since is not None:
            clauses.append("timestamp > ?")
            params.append(since)
        if action:
            clauses.append("action_type = ?")
            try:
                params.append(AuditAction(action.upper()).value)
            except ValueError:
                raise ValidationError(f"Unknown audit action: {action}")
        if target_id is not None:
            clauses.append("target_id = ?")
            params.append(str(target_id))

        where = " AND ".join(clauses) if clauses else "1=1"
        params.append(limit)

        with self.db.connection() as conn:
            rows = conn.fetchall(
                f"SELECT * FROM audit_log WHERE {where} ORDER BY seq DESC LIMIT ?",
                params,
            )
        return [_row_to_entry(r) for r in rows]

    def verify_chain(self) -> dict:
        """Replay the hash chain from the first entry.

        Returns {"valid": bool, "entries_checked": int, "broken_at": entry_id or None}.
        """
        with self.db.connection() as conn:
            rows = conn.fetchall("SELECT * FROM audit_log ORDER BY seq ASC")

        prev_hash = ""
        for i, row in enumerate(rows):
            entry = _row_to_entry(row)
            if entry.prev_hash != prev_hash:
                return {
                    "valid": False,
                    "entries_checked": i + 1,
                    "broken_at": entry.entry_id,
                    "reason": f"prev_hash mismatch at entry {entry.entry_id}",
                }
            if entry.compute_hash() != entry.entry_hash:
                return {
                    "valid": False,
                    "entries_checked": i + 1,
                    "broken_at": entry.entry_id,
                    "reason": f"entry_hash tampered at entry {entry.entry_id}",
                }
            prev_hash = entry.entry_hash

        return {"valid": True, "entries_checked": len(rows), "broken_at": None}
