# Hearsay Deletion Coordinator
# Hard-deletes a rumor and keeps derived reputation consistent afterwards.
#
#   voters:   their cache rows are invalidated; the recomputation no longer
#             sees this rumor's outcome, so its effect on them disappears.
#   creator:  a debunked (finalized FALSE) rumor keeps costing its author.
#             The authorship penalty is re-applied to the cache right away
#             and persisted as a reputation_penalties row, otherwise
#             "post, get debunked, delete" would erase it.
#
# Everything runs in a single transaction: the cascade, the invalidations and
# the penalty either all commit or none of them do.

import logging
import time
from dataclasses import asdict, dataclass, field
from typing import Optional

from audit import AuditAction, AuditLog
from db import Database, get_database
from errors import AuthorizationError, ForbiddenError
from reputation import ReputationEngine
from rumors import RumorStore, parse_rumor_id
from signing import delete_message, verify_signature
from trust import get_finalized

log = logging.getLogger("hearsay")


@dataclass
class DeletionResult:
    rumor_id: int
    affected_voters: list = field(default_factory=list)
    was_finalized: bool = False
    outcome: Optional[bool] = None
    penalty_applied: bool = False
    creator_reputation: Optional[float] = None

    @property
    def affected_voter_count(self) -> int:
        return len(self.affected_voters)

    def to_dict(self) -> dict:
        d = asdict(self)
        d["affected_voters"] = self.affected_voter_count
        return d


class DeletionCoordinator:

    def __init__(self, db: Optional[Database] = None,
                 engine: Optional[ReputationEngine] = None,
                 rumors: Optional[RumorStore] = None,
                 audit: Optional[AuditLog] = None, clock=time.time):
        self.db = db or get_database()
        self.clock = clock
        self.engine = engine or ReputationEngine(self.db, clock=clock)
        self.audit = audit or AuditLog(self.db, clock=clock)
        self.rumors = rumors or RumorStore(self.db, audit=self.audit, clock=clock)

    def delete_rumor(self, rumor_id, requester: str, signature: str) -> DeletionResult:
        """Delete a rumor on behalf of its creator.

        `signature` must sign DELETE:<rumor_id> with the requester's key.
        """
        rumor_id = parse_rumor_id(rumor_id)
        if not verify_signature(delete_message(rumor_id), signature, requester):
            raise AuthorizationError("Invalid signature")

        with self.db.transaction() as conn:
            rumor = self.rumors.require(conn, rumor_id)
            if rumor.creator_public_key != requester:
                raise ForbiddenError("Only the creator can delete this rumor")

            voters = [
                r["voter_public_key"]
                for r in conn.fetchall(
                    "SELECT DISTINCT voter_public_key FROM votes WHERE rumor_id = ? "
                    "ORDER BY voter_public_key",
                    (rumor_id,),
                )
            ]
            finalized = get_finalized(conn, rumor_id)

            self.audit.append(conn, AuditAction.DELETE, requester, rumor_id,
                              f"{rumor_id}:{signature}")

            # Votes, comments and finalized_scores cascade.
            conn.execute("DELETE FROM rumors WHERE id = ?", (rumor_id,))

            self.engine.invalidate(conn, [v for v in voters if v != requester])

            result = DeletionResult(
                rumor_id=rumor_id,
                affected_voters=voters,
                was_finalized=finalized is not None,
                outcome=finalized["outcome"] if finalized else None,
            )

            if finalized is not None and finalized["outcome"] is False:
                result.creator_reputation = self.engine.apply_deletion_penalty(
                    conn, requester, f"Deleted debunked rumor #{rumor_id}"
                )
                result.penalty_applied = True
            else:
                self.engine.invalidate(conn, [requester])

        log.info("DELETE rumor=%d creator=%s voters=%d finalized=%s penalty=%s",
                 rumor_id, requester[:12], result.affected_voter_count,
                 result.was_finalized, result.penalty_applied)
        return result
