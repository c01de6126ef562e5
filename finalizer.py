# Hearsay Finalization Scheduler
# Closes expired rumors exactly once.
#
# Rumor lifecycle:   OPEN (no finalized_scores row) -> FINALIZED (row exists)
#
# A sweep selects every rumor whose deadline has passed and which has no
# finalized_scores row, then finalizes each one in its own transaction:
# weighted tally, insert the immutable outcome (unique on rumor_id, conflict
# is a no-op), invalidate the reputation cache of every voter and of the
# creator, append a FINALIZE audit entry. A failing rumor is logged and left
# for the next sweep; selection by absence makes the retry safe.

import logging
import os
import threading
import time
from dataclasses import asdict, dataclass, field
from typing import Callable, Optional

from audit import AuditAction, AuditLog
from db import Database, get_database
from errors import HearsayError
from reputation import ReputationEngine
from trust import get_finalized, tally_votes

log = logging.getLogger("hearsay")

FINALIZE_INTERVAL_SEC = float(os.environ.get("HEARSAY_FINALIZE_INTERVAL_SEC", "60"))
LOG_FILE = os.environ.get("HEARSAY_LOG_FILE", "")


# ── Logging ───────────────────────────────────────────────────────────


def setup_logging(log_file=None, level=logging.INFO):
    """Console always, plus a file handler when HEARSAY_LOG_FILE (or log_file) is set."""
    log_file = log_file or LOG_FILE
    logger = logging.getLogger("hearsay")

    if logger.handlers:
        return logger

    logger.setLevel(level)
    fmt = logging.Formatter(
        "[%(asctime)s] %(levelname)-8s %(message)s", datefmt="%Y-%m-%d %H:%M:%S"
    )

    if log_file:
        fh = logging.FileHandler(log_file)
        fh.setLevel(level)
        fh.setFormatter(fmt)
        logger.addHandler(fh)

    ch = logging.StreamHandler()
    ch.setLevel(level)
    ch.setFormatter(fmt)
    logger.addHandler(ch)

    return logger


# ── Records ───────────────────────────────────────────────────────────


@dataclass
class FinalizedOutcome:
    rumor_id: int
    trust_score: float
    total_votes: int
    outcome: bool
    finalized_at: float

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class SweepReport:
    started_at: float = 0.0
    candidates: int = 0
    finalized: list = field(default_factory=list)   # FinalizedOutcome
    skipped: list = field(default_factory=list)     # rumor ids already handled elsewhere
    failed: dict = field(default_factory=dict)      # rumor id -> error message

    def to_dict(self) -> dict:
        return {
            "started_at": self.started_at,
            "candidates": self.candidates,
            "finalized": [o.to_dict() for o in self.finalized],
            "skipped": list(self.skipped),
            "failed": {str(k): v for k, v in self.failed.items()},
        }


# ── Finalizer ─────────────────────────────────────────────────────────


class Finalizer:
    """The only writer of finalized_scores."""

    def __init__(self, db: Optional[Database] = None,
                 engine: Optional[ReputationEngine] = None,
                 audit: Optional[AuditLog] = None, clock=time.time):
        self.db = db or get_database()
        self.clock = clock
        self.engine = engine or ReputationEngine(self.db, clock=clock)
        self.audit = audit or AuditLog(self.db, clock=clock)

    def due_rumor_ids(self, now: Optional[float] = None) -> list[int]:
        now = self.clock() if now is None else now
        with self.db.connection() as conn:
            rows = conn.fetchall(
                """SELECT r.id
                   FROM rumors r
                   LEFT JOIN finalized_scores f ON f.rumor_id = r.id
                   WHERE r.deadline <= ? AND f.rumor_id IS NULL
                   ORDER BY r.deadline ASC, r.id ASC""",
                (now,),
            )
        return [int(r["id"]) for r in rows]

    def finalize_rumor(self, rumor_id: int) -> Optional[FinalizedOutcome]:
        """Finalize one rumor. Returns None if it is gone, open, or already final."""
        now = self.clock()
        with self.db.transaction() as conn:
            rumor = conn.fetchone(
                "SELECT id, creator_public_key, deadline FROM rumors WHERE id = ?",
                (rumor_id,),
            )
            if rumor is None or rumor["deadline"] > now:
                return None
            if get_finalized(conn, rumor_id) is not None:
                return None

            tally = tally_votes(conn, rumor_id, self.engine)
            outcome = FinalizedOutcome(
                rumor_id=rumor_id,
                trust_score=tally.score,
                total_votes=tally.total_votes,
                outcome=tally.outcome,
                finalized_at=now,
            )

            cur = conn.execute(
                """INSERT INTO finalized_scores
                   (rumor_id, trust_score, total_votes, outcome, finalized_at)
                   VALUES (?, ?, ?, ?, ?)
                   ON CONFLICT (rumor_id) DO NOTHING""",
                (rumor_id, outcome.trust_score, outcome.total_votes,
                 outcome.outcome, outcome.finalized_at),
            )
            if cur.rowcount == 0:
                log.info("FINALIZE rumor=%d already finalized by a concurrent sweep", rumor_id)
                return None

            self.engine.invalidate(conn, tally.voters + [rumor["creator_public_key"]])
            self.audit.append(conn, AuditAction.FINALIZE, None, rumor_id,
                              f"finalize:{rumor_id}:{outcome.trust_score}")

        log.info("FINALIZE rumor=%d score=%.1f votes=%d outcome=%s",
                 rumor_id, outcome.trust_score, outcome.total_votes, outcome.outcome)
        return outcome

    def finalize_due(self) -> SweepReport:
        """One sweep. A failure on one rumor never stops the others."""
        report = SweepReport(started_at=self.clock())
        ids = self.due_rumor_ids(report.started_at)
        report.candidates = len(ids)

        for rumor_id in ids:
            try:
                outcome = self.finalize_rumor(rumor_id)
            except HearsayError as e:
                log.warning("FINALIZE rumor=%d failed (retry next sweep): %s", rumor_id, e)
                report.failed[rumor_id] = str(e)
                continue
            except Exception as e:
                log.exception("FINALIZE rumor=%d crashed (retry next sweep)", rumor_id)
                report.failed[rumor_id] = str(e)
                continue

            if outcome is None:
                report.skipped.append(rumor_id)
            else:
                report.finalized.append(outcome)

        if report.candidates:
            log.info("SWEEP finalized=%d skipped=%d failed=%d",
                     len(report.finalized), len(report.skipped), len(report.failed))
        return report


# ── Scheduler ─────────────────────────────────────────────────────────


class FinalizationScheduler:
    """Runs Finalizer.finalize_due every `interval` seconds in a daemon thread.

    run_once() triggers a single sweep synchronously, which is what tests and
    the CLI use.
    """

    def __init__(self, finalizer: Finalizer,
                 interval: float = FINALIZE_INTERVAL_SEC,
                 callback: Optional[Callable[[SweepReport], None]] = None):
        self.finalizer = finalizer
        self.interval = interval
        self.callback = callback
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._sweep_lock = threading.Lock()

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def run_once(self) -> SweepReport:
        with self._sweep_lock:
            report = self.finalizer.finalize_due()
        if self.callback:
            self.callback(report)
        return report

    def _loop(self):
        while not self._stop.is_set():
            try:
                self.run_once()
            except HearsayError as e:
                # Store unavailable for the whole sweep; next tick retries.
                log.warning("SWEEP aborted: %s", e)
            except Exception:
                log.exception("SWEEP crashed")
            self._stop.wait(self.interval)

    def start(self) -> threading.Thread:
        """Start the sweep loop in a background thread. Idempotent."""
        if self.running:
            return self._thread
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._loop, name="hearsay-finalizer", daemon=True
        )
        self._thread.start()
        log.info("FINALIZER started (interval=%.0fs)", self.interval)
        return self._thread

    def stop(self, timeout: Optional[float] = None):
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
            log.info("FINALIZER stopped")
