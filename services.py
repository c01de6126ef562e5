# Hearsay service wiring
# One place that builds every component on top of a shared Database, audit
# log and clock, so the HTTP layer, the CLI and the tests see the same graph.

import threading
import time
from dataclasses import dataclass
from typing import Optional

from audit import AuditLog
from db import Database, get_database
from deletion import DeletionCoordinator
from finalizer import Finalizer
from identity import IdentityStore
from reputation import ReputationEngine
from rumors import RumorStore
from trust import TrustScorer
from votes import VoteStore


@dataclass
class Hearsay:
    db: Database
    audit: AuditLog
    identities: IdentityStore
    rumors: RumorStore
    votes: VoteStore
    engine: ReputationEngine
    trust: TrustScorer
    finalizer: Finalizer
    deletion: DeletionCoordinator
    clock: object = time.time


def build_services(db: Optional[Database] = None, clock=time.time,
                   cache_ttl_sec: Optional[float] = None) -> Hearsay:
    db = db or get_database()
    audit = AuditLog(db, clock=clock)
    identities = IdentityStore(db, audit, clock=clock)
    rumors = RumorStore(db, identities, audit, clock=clock)
    engine = ReputationEngine(db, clock=clock, cache_ttl_sec=cache_ttl_sec)
    return Hearsay(
        db=db,
        audit=audit,
        identities=identities,
        rumors=rumors,
        votes=VoteStore(db, rumors, identities, audit, clock=clock),
        engine=engine,
        trust=TrustScorer(db, engine, clock=clock),
        finalizer=Finalizer(db, engine, audit, clock=clock),
        deletion=DeletionCoordinator(db, engine, rumors, audit, clock=clock),
        clock=clock,
    )


# ── Singleton ─────────────────────────────────────────────────────────

_services: Optional[Hearsay] = None
_services_lock = threading.Lock()


def get_services() -> Hearsay:
    global _services
    if _services is not None:
        return _services
    with _services_lock:
        if _services is None:
            _services = build_services()
        return _services


def set_services(services: Optional[Hearsay]):
    """Swap the process-wide graph (tests, or a CLI run against another DB)."""
    global _services
    with _services_lock:
        _services = services
