# Hearsay Trust Score
# Reputation-weighted belief that a rumor is true, on a 0-100 scale.
#
#   score   = true_weight / (true_weight + false_weight) * 100
#   no votes -> 50 (contested / unknown)
#   outcome = true_weight >= false_weight   (ties resolve to TRUE)
#
# Once a rumor is finalized its stored score is returned verbatim. Before
# that, a requester must have voted to see the running score ("vote to see").

import logging
import time
from dataclasses import asdict, dataclass, field
from typing import Optional

from db import Connection, Database, get_database
from errors import ForbiddenError, NotFoundError
from reputation import ReputationEngine
from rumors import parse_rumor_id
from votes import has_voted, votes_for

log = logging.getLogger("hearsay")

NEUTRAL_SCORE = 50.0
SCORE_PRECISION = 1


@dataclass
class WeightedTally:
    true_weight: float = 0.0
    false_weight: float = 0.0
    total_votes: int = 0
    voters: list = field(default_factory=list)

    @property
    def score(self) -> float:
        total = self.true_weight + self.false_weight
        if total <= 0:
            return NEUTRAL_SCORE
        return round(self.true_weight / total * 100, SCORE_PRECISION)

    @property
    def outcome(self) -> bool:
        return self.true_weight >= self.false_weight


def tally_votes(conn: Connection, rumor_id: int,
                engine: ReputationEngine) -> WeightedTally:
    """Sum each voter's current weight per vote value."""
    tally = WeightedTally()
    for vote in votes_for(conn, rumor_id):
        weight = engine.weight_for(conn, vote.voter_public_key)
        if vote.vote_value:
            tally.true_weight += weight
        else:
            tally.false_weight += weight
        tally.total_votes += 1
        tally.voters.append(vote.voter_public_key)
    return tally


@dataclass
class TrustScore:
    rumor_id: int
    trust_score: float
    vote_count: int
    finalized: bool
    outcome: Optional[bool] = None
    finalized_at: Optional[float] = None
    can_view: bool = True

    def to_dict(self) -> dict:
        return asdict(self)


def get_finalized(conn: Connection, rumor_id: int) -> Optional[dict]:
    row = conn.fetchone(
        """SELECT rumor_id, trust_score, total_votes, outcome, finalized_at
           FROM finalized_scores WHERE rumor_id = ?""",
        (rumor_id,),
    )
    if not row:
        return None
    return {
        "rumor_id": int(row["rumor_id"]),
        "trust_score": float(row["trust_score"]),
        "total_votes": int(row["total_votes"]),
        "outcome": bool(row["outcome"]),
        "finalized_at": float(row["finalized_at"]),
    }


class TrustScorer:

    def __init__(self, db: Optional[Database] = None,
                 engine: Optional[ReputationEngine] = None, clock=time.time):
        self.db = db or get_database()
        self.clock = clock
        self.engine = engine or ReputationEngine(self.db, clock=clock)

    def get_trust_score(self, rumor_id, requester: Optional[str] = None) -> TrustScore:
        rumor_id = parse_rumor_id(rumor_id)
        # Transaction: the tally may refresh reputation cache rows.
        with self.db.transaction() as conn:
            finalized = get_finalized(conn, rumor_id)
            if finalized is not None:
                return TrustScore(
                    rumor_id=rumor_id,
                    trust_score=finalized["trust_score"],
                    vote_count=finalized["total_votes"],
                    finalized=True,
                    outcome=finalized["outcome"],
                    finalized_at=finalized["finalized_at"],
                )

            exists = conn.fetchone("SELECT id FROM rumors WHERE id = ?", (rumor_id,))
            if not exists:
                raise NotFoundError("Rumor not found")

            if requester and not has_voted(conn, rumor_id, requester):
                raise ForbiddenError("Must vote first", can_view=False)

            tally = tally_votes(conn, rumor_id, self.engine)

        return TrustScore(
            rumor_id=rumor_id,
            trust_score=tally.score,
            vote_count=tally.total_votes,
            finalized=False,
        )
