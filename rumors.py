# Hearsay Rumor Store
# Claims ("rumors") with an immutable voting deadline, plus the anonymous
# comment thread attached to each rumor.
#
# Rumors are hard-deleted only through deletion.DeletionCoordinator; votes,
# comments and the finalized score go with them (ON DELETE CASCADE).

import logging
import math
import time
from dataclasses import asdict, dataclass
from typing import Optional

from audit import AuditAction, AuditLog
from db import Connection, Database, get_database
from errors import AuthorizationError, NotFoundError, ValidationError
from identity import IdentityStore
from signing import comment_message, submit_message, verify_signature

log = logging.getLogger("hearsay")

MAX_CONTENT_CHARS = 1000
MAX_CATEGORY_CHARS = 64
DEFAULT_VOTING_WINDOW_SEC = 3 * 24 * 3600     # 72 hours
MAX_VOTING_WINDOW_SEC = 30 * 24 * 3600        # 30 days

MAX_COMMENT_CHARS = 500
MAX_IMAGE_CHARS = 2_800_000                   # ~2 MB once base64-encoded


@dataclass
class Rumor:
    id: int
    content: str
    category: Optional[str]
    creator_public_key: str
    created_at: float
    deadline: float
    vote_count: int = 0
    comment_count: int = 0

    def is_open(self, now: float) -> bool:
        return now < self.deadline

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class Comment:
    id: int
    rumor_id: int
    commenter_public_key: str
    content: str
    image_url: Optional[str]
    created_at: float

    def to_dict(self) -> dict:
        return asdict(self)


def parse_rumor_id(value) -> int:
    try:
        rumor_id = int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"Invalid rumor id: {value!r}")
    if rumor_id <= 0:
        raise ValidationError(f"Invalid rumor id: {value!r}")
    return rumor_id


def _row_to_rumor(row) -> Rumor:
    keys = row.keys()
    return Rumor(
        id=int(row["id"]),
        content=row["content"],
        category=row["category"],
        creator_public_key=row["creator_public_key"],
        created_at=row["created_at"],
        deadline=row["deadline"],
        vote_count=int(row["vote_count"]) if "vote_count" in keys else 0,
        comment_count=int(row["comment_count"]) if "comment_count" in keys else 0,
    )


class RumorStore:

    def __init__(self, db: Optional[Database] = None,
                 identities: Optional[IdentityStore] = None,
                 audit: Optional[AuditLog] = None, clock=time.time):
        self.db = db or get_database()
        self.clock = clock
        self.audit = audit or AuditLog(self.db, clock=clock)
        self.identities = identities or IdentityStore(self.db, self.audit, clock=clock)

    # ── Rumors ────────────────────────────────────────────────────────

    def submit(self, content: str, creator_public_key: str, signature: str,
               category: Optional[str] = None,
               custom_deadline: Optional[float] = None) -> Rumor:
        """Create a rumor. The deadline is fixed here and never changes."""
        if not content:
            raise ValidationError("Content cannot be empty")
        if len(content) > MAX_CONTENT_CHARS:
            raise ValidationError(f"Content too long (max {MAX_CONTENT_CHARS} characters)")
        if category is not None and len(category) > MAX_CATEGORY_CHARS:
            raise ValidationError(f"Category too long (max {MAX_CATEGORY_CHARS} characters)")

        if not verify_signature(submit_message(content), signature, creator_public_key):
            raise AuthorizationError("Invalid signature")

        now = self.clock()
        if custom_deadline is not None:
            deadline = float(custom_deadline)
            if not math.isfinite(deadline):
                raise ValidationError("Deadline must be a finite timestamp")
            if deadline <= now:
                raise ValidationError("Deadline must be in the future")
            if deadline > now + MAX_VOTING_WINDOW_SEC:
                raise ValidationError("Deadline cannot be more than 30 days in future")
        else:
            deadline = now + DEFAULT_VOTING_WINDOW_SEC

        with self.db.transaction() as conn:
            self.identities.require(conn, creator_public_key)
            row = conn.fetchall(
                """INSERT INTO rumors
                   (content, category, creator_public_key, created_at, deadline)
                   VALUES (?, ?, ?, ?, ?)
                   RETURNING id""",
                (content, category, creator_public_key, now, deadline),
            )[0]
            rumor_id = int(row["id"])
            self.audit.append(conn, AuditAction.SUBMIT, creator_public_key,
                              rumor_id, content)

        log.info("SUBMIT rumor=%d creator=%s deadline=%.0f",
                 rumor_id, creator_public_key[:12], deadline)
        return Rumor(
            id=rumor_id,
            content=content,
            category=category,
            creator_public_key=creator_public_key,
            created_at=now,
            deadline=deadline,
        )

    def lookup(self, conn: Connection, rumor_id: int) -> Optional[Rumor]:
        row = conn.fetchone(
            """SELECT r.id, r.content, r.category, r.creator_public_key,
                      r.created_at, r.deadline,
                      (SELECT COUNT(*) FROM votes v WHERE v.rumor_id = r.id) AS vote_count,
                      (SELECT COUNT(*) FROM comments c WHERE c.rumor_id = r.id) AS comment_count
               FROM rumors r WHERE r.id = ?""",
            (rumor_id,),
        )
        return _row_to_rumor(row) if row else None

    def require(self, conn: Connection, rumor_id: int) -> Rumor:
        rumor = self.lookup(conn, rumor_id)
        if rumor is None:
            raise NotFoundError("Rumor not found")
        return rumor

    def get(self, rumor_id) -> Rumor:
        rumor_id = parse_rumor_id(rumor_id)
        with self.db.connection() as conn:
            return self.require(conn, rumor_id)

    def list_rumors(self, limit: int = 200) -> list[Rumor]:
        """All rumors, newest first, with vote and comment counts."""
        with self.db.connection() as conn:
            rows = conn.fetchall(
                """SELECT r.id, r.content, r.category, r.creator_public_key,
                          r.created_at, r.deadline,
                          (SELECT COUNT(*) FROM votes v WHERE v.rumor_id = r.id) AS vote_count,
                          (SELECT COUNT(*) FROM comments c WHERE c.rumor_id = r.id) AS comment_count
                   FROM rumors r
                   ORDER BY r.created_at DESC, r.id DESC
                   LIMIT ?""",
                (limit,),
            )
        return [_row_to_rumor(r) for r in rows]

    # ── Comments ──────────────────────────────────────────────────────

    def post_comment(self, rumor_id, commenter_public_key: str, content: str,
                     signature: str, image_url: Optional[str] = None) -> Comment:
        rumor_id = parse_rumor_id(rumor_id)
        content = content or ""
        if not content.strip() and not image_url:
            raise ValidationError("Comment cannot be empty")
        if len(content) > MAX_COMMENT_CHARS:
            raise ValidationError(f"Comment too long (max {MAX_COMMENT_CHARS} characters)")
        if image_url and len(image_url) > MAX_IMAGE_CHARS:
            raise ValidationError("Image too large (max 2MB)")

        # Signature covers the text only.
        if not verify_signature(comment_message(rumor_id, content), signature,
                                commenter_public_key):
            raise AuthorizationError("Invalid signature")

        now = self.clock()
        with self.db.transaction() as conn:
            self.require(conn, rumor_id)
            self.identities.require(conn, commenter_public_key)
            row = conn.fetchall(
                """INSERT INTO comments
                   (rumor_id, commenter_public_key, content, image_url, created_at)
                   VALUES (?, ?, ?, ?, ?)
                   RETURNING id""",
                (rumor_id, commenter_public_key, content.strip(), image_url or None, now),
            )[0]
            self.audit.append(conn, AuditAction.COMMENT, commenter_public_key, rumor_id,
                              f"{rumor_id}:{row['id']}:{content.strip()}")

        return Comment(
            id=int(row["id"]),
            rumor_id=rumor_id,
            commenter_public_key=commenter_public_key,
            content=content.strip(),
            image_url=image_url or None,
            created_at=now,
        )

    def list_comments(self, rumor_id) -> list[Comment]:
        rumor_id = parse_rumor_id(rumor_id)
        with self.db.connection() as conn:
            rows = conn.fetchall(
                """SELECT id, rumor_id, commenter_public_key, content, image_url, created_at
                   FROM comments WHERE rumor_id = ?
                   ORDER BY created_at ASC, id ASC""",
                (rumor_id,),
            )
        return [
            Comment(
                id=int(r["id"]),
                rumor_id=int(r["rumor_id"]),
                commenter_public_key=r["commenter_public_key"],
                content=r["content"],
                image_url=r["image_url"],
                created_at=r["created_at"],
            )
            for r in rows
        ]
