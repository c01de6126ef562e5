# Hearsay Reputation Engine: accuracy-weighted trust for anonymous voters
#
# Reputation is derived, never stored as truth. It is recomputed from:
#   Votes:       every vote cast on a rumor that has a finalized outcome
#   Authorship:  +0.2 / -0.2 per authored rumor finalized TRUE / FALSE
#   Penalties:   permanent rows in reputation_penalties (see deletion.py)
#
# Vote policy (exponential decay, replayed oldest vote first):
#   recency  = exp(-age_days / 30)
#   correct:   rep = rep * 1.15 + 0.15 * recency
#   incorrect: rep = rep * 0.85
#   bounded:   rep = tanh(rep / 100) * 100
#
# The reputation_cache table memoizes the result for CACHE_TTL_SEC. It may be
# wiped at any moment without losing information; finalization and deletion
# invalidate the rows they affect.
#
# Vote weight: reputation if reputation > 0, else exactly 1.

import logging
import math
import os
import time
from dataclasses import asdict, dataclass
from typing import Iterable, Optional

from db import Connection, Database, get_database, placeholders

log = logging.getLogger("hearsay")


# ── Policy Constants ──────────────────────────────────────────────────

CACHE_TTL_SEC = float(os.environ.get("HEARSAY_REPUTATION_CACHE_TTL_SEC", "60"))

SECONDS_PER_DAY = 86400
RECENCY_HALF_WINDOW_DAYS = 30       # e-folding time of the recency factor
CORRECT_GROWTH = 1.15
CORRECT_REWARD = 0.15
INCORRECT_DECAY = 0.85
NORMALIZATION_SCALE = 100           # tanh bound: |vote component| < 100

CREATOR_REWARD = 0.2                # authored rumor finalized TRUE
CREATOR_PENALTY = -0.2              # authored rumor finalized FALSE

BASELINE_WEIGHT = 1.0
PRECISION = 1                       # decimal places


# ── Pure scoring ──────────────────────────────────────────────────────


def decayed_vote_score(history: Iterable[tuple[float, bool]], now: float) -> float:
    """Replay (voted_at, correct) pairs in time order and bound the result."""
    rep = 0.0
    for voted_at, correct in sorted(history, key=lambda h: h[0]):
        if correct:
            age_days = max(0.0, now - voted_at) / SECONDS_PER_DAY
            recency = math.exp(-age_days / RECENCY_HALF_WINDOW_DAYS)
            rep = rep * CORRECT_GROWTH + CORRECT_REWARD * recency
        else:
            rep = rep * INCORRECT_DECAY
    return math.tanh(rep / NORMALIZATION_SCALE) * NORMALIZATION_SCALE


def authorship_points(outcomes: Iterable[bool]) -> float:
    return sum(CREATOR_REWARD if outcome else CREATOR_PENALTY for outcome in outcomes)


def vote_weight(reputation: float) -> float:
    """Only positive reputation changes influence; everything else counts as 1."""
    return reputation if reputation > 0 else BASELINE_WEIGHT


# ── Score Record ──────────────────────────────────────────────────────

@dataclass
class ReputationScore:
    """Breakdown of one reputation computation."""
    public_key: str = ""
    reputation: float = 0.0
    computed_at: float = 0.0
    cached: bool = False

    # Components
    vote_points: float = 0.0
    authorship_points: float = 0.0
    penalty_points: float = 0.0

    # Stats
    votes_scored: int = 0
    votes_correct: int = 0
    rumors_authored: int = 0

    @property
    def weight(self) -> float:
        return vote_weight(self.reputation)

    def to_dict(self) -> dict:
        d = asdict(self)
        d["weight"] = self.weight
        return d


# ── Reputation Store ──────────────────────────────────────────────────

class ReputationStore:
    """Cache and penalty tables. All methods run on the caller's connection."""

    def get_cached(self, conn: Connection, public_key: str) -> Optional[dict]:
        row = conn.fetchone(
            "SELECT reputation, computed_at FROM reputation_cache WHERE public_key = ?",
            (public_key,),
        )
        if not row:
            return None
        return {"reputation": float(row["reputation"]), "computed_at": float(row["computed_at"])}

    def save_cached(self, conn: Connection, public_key: str,
                    reputation: float, computed_at: float):
        conn.execute(
            """INSERT INTO reputation_cache (public_key, reputation, computed_at)
               VALUES (?, ?, ?)
               ON CONFLICT (public_key) DO UPDATE SET
                   reputation = excluded.reputation,
                   computed_at = excluded.computed_at""",
            (public_key, reputation, computed_at),
        )

    def invalidate(self, conn: Connection, public_keys: Iterable[str]) -> int:
        keys = sorted(set(k for k in public_keys if k))
        if not keys:
            return 0
        cur = conn.execute(
            f"DELETE FROM reputation_cache WHERE public_key IN ({placeholders(len(keys))})",
            keys,
        )
        return cur.rowcount

    def record_penalty(self, conn: Connection, public_key: str, penalty: float,
                       reason: str, created_at: float):
        conn.execute(
            """INSERT INTO reputation_penalties (public_key, penalty, reason, created_at)
               VALUES (?, ?, ?, ?)""",
            (public_key, penalty, reason, created_at),
        )

    def penalty_total(self, conn: Connection, public_key: str,
                      as_of: Optional[float] = None) -> float:
        if as_of is None:
            return float(conn.scalar(
                "SELECT COALESCE(SUM(penalty), 0) AS total FROM reputation_penalties "
                "WHERE public_key = ?",
                (public_key,), default=0.0,
            ))
        return float(conn.scalar(
            "SELECT COALESCE(SUM(penalty), 0) AS total FROM reputation_penalties "
            "WHERE public_key = ? AND created_at <= ?",
            (public_key, as_of), default=0.0,
        ))

    def get_penalty_history(self, conn: Connection, public_key: str) -> list[dict]:
        rows = conn.fetchall(
            """SELECT id, public_key, penalty, reason, created_at
               FROM reputation_penalties
               WHERE public_key = ?
               ORDER BY created_at DESC, id DESC""",
            (public_key,),
        )
        return [dict(r) for r in rows]


# ── Reputation Engine ─────────────────────────────────────────────────

class ReputationEngine:
    """Computes, caches and invalidates reputation.

    Never writes votes, rumors or finalized scores.
    """

    def __init__(self, db: Optional[Database] = None,
                 store: Optional[ReputationStore] = None, clock=time.time,
                 cache_ttl_sec: Optional[float] = None):
        self.db = db or get_database()
        self.store = store or ReputationStore()
        self.clock = clock
        self.cache_ttl_sec = CACHE_TTL_SEC if cache_ttl_sec is None else cache_ttl_sec

    def get_reputation(self, public_key: str, as_of: Optional[float] = None,
                       conn: Optional[Connection] = None) -> float:
        return self.get_score(public_key, as_of=as_of, conn=conn).reputation

    def get_score(self, public_key: str, as_of: Optional[float] = None,
                  conn: Optional[Connection] = None) -> ReputationScore:
        """Cached reputation, or a fresh computation that refreshes the cache.

        With an explicit `as_of` the result is a point-in-time computation that
        bypasses the cache entirely.
        """
        if conn is None:
            with self.db.transaction() as own:
                return self.get_score(public_key, as_of=as_of, conn=own)

        if as_of is not None:
            return self.compute_score(conn, public_key, now=as_of, as_of=as_of)

        now = self.clock()
        cached = self.store.get_cached(conn, public_key)
        if cached is not None:
            age = now - cached["computed_at"]
            if 0 <= age < self.cache_ttl_sec:
                return ReputationScore(
                    public_key=public_key,
                    reputation=cached["reputation"],
                    computed_at=cached["computed_at"],
                    cached=True,
                )

        score = self.compute_score(conn, public_key, now=now)
        self.store.save_cached(conn, public_key, score.reputation, now)
        return score

    def compute_score(self, conn: Connection, public_key: str, now: float,
                      as_of: Optional[float] = None) -> ReputationScore:
        """Recompute from votes, finalized outcomes and penalties. No cache access."""
        vote_sql = """SELECT v.vote_value, v.voted_at, f.outcome
                      FROM votes v
                      JOIN finalized_scores f ON v.rumor_id = f.rumor_id
                      WHERE v.voter_public_key = ?"""
        authored_sql = """SELECT f.outcome
                          FROM rumors r
                          JOIN finalized_scores f ON r.id = f.rumor_id
                          WHERE r.creator_public_key = ?"""
        params = [public_key]
        if as_of is not None:
            vote_sql += " AND v.voted_at <= ? AND f.finalized_at <= ?"
            authored_sql += " AND f.finalized_at <= ?"

        vote_rows = conn.fetchall(
            vote_sql + " ORDER BY v.voted_at ASC, v.rumor_id ASC",
            params + ([as_of, as_of] if as_of is not None else []),
        )
        authored_rows = conn.fetchall(
            authored_sql,
            params + ([as_of] if as_of is not None else []),
        )

        history = [
            (float(r["voted_at"]), bool(r["vote_value"]) == bool(r["outcome"]))
            for r in vote_rows
        ]
        vote_points = decayed_vote_score(history, now)
        creator_points = authorship_points(bool(r["outcome"]) for r in authored_rows)
        penalty_points = self.store.penalty_total(conn, public_key, as_of=as_of)

        reputation = round(vote_points + creator_points + penalty_points, PRECISION)

        return ReputationScore(
            public_key=public_key,
            reputation=reputation,
            computed_at=now,
            cached=False,
            vote_points=round(vote_points, 4),
            authorship_points=round(creator_points, 4),
            penalty_points=round(penalty_points, 4),
            votes_scored=len(history),
            votes_correct=sum(1 for _, correct in history if correct),
            rumors_authored=len(authored_rows),
        )

    def weight_for(self, conn: Connection, public_key: str) -> float:
        return vote_weight(self.get_reputation(public_key, conn=conn))

    def invalidate(self, conn: Connection, public_keys: Iterable[str]) -> int:
        removed = self.store.invalidate(conn, public_keys)
        if removed:
            log.debug("REPUTATION cache invalidated for %d identities", removed)
        return removed

    def apply_deletion_penalty(self, conn: Connection, public_key: str,
                               reason: str) -> float:
        """Make a creator penalty survive the deletion of its originating outcome.

        The caller has already deleted the rumor. The fresh value no longer
        contains the authorship penalty, so it is re-applied to the cache now
        and persisted as a penalty row for every later recomputation.
        """
        now = self.clock()
        self.store.invalidate(conn, [public_key])
        fresh = self.compute_score(conn, public_key, now=now).reputation
        penalized = round(fresh + CREATOR_PENALTY, PRECISION)
        self.store.save_cached(conn, public_key, penalized, now)
        self.store.record_penalty(conn, public_key, CREATOR_PENALTY, reason, now)
        log.warning("REPUTATION %s %.1f permanent penalty (%s) fresh=%.1f now=%.1f",
                    public_key[:12], CREATOR_PENALTY, reason, fresh, penalized)
        return penalized

    def get_penalty_history(self, public_key: str) -> list[dict]:
        with self.db.connection() as conn:
            return self.store.get_penalty_history(conn, public_key)
