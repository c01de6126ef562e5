# Hearsay API
# FastAPI. Anonymous rumors, signed votes, reputation-weighted truth.
#
# Every state-changing request is signed with the caller's Ed25519 key; the
# server never sees private keys and never stores anything but public keys.

import hmac
import json
import os
import time
from collections import defaultdict, deque
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, StrictBool
from starlette.middleware.base import BaseHTTPMiddleware

from errors import HearsayError, NotFoundError
from finalizer import FINALIZE_INTERVAL_SEC, FinalizationScheduler, setup_logging
from services import Hearsay, get_services

log = setup_logging()

HEARSAY_ENV = os.environ.get("HEARSAY_ENV", "dev").lower()
AUTH_REQUIRED = HEARSAY_ENV not in {"dev", "development", "test"}
FINALIZER_ENABLED = os.environ.get("HEARSAY_FINALIZER_ENABLED", "1") not in {"0", "false", "no"}
RATE_LIMIT_REQUESTS = int(os.environ.get("HEARSAY_RATE_LIMIT_REQUESTS", "120"))
RATE_LIMIT_WINDOW_SEC = int(os.environ.get("HEARSAY_RATE_LIMIT_WINDOW_SEC", "60"))
_RATE_BUCKETS = defaultdict(deque)
_rate_pruned_at = 0.0

PUBLIC_PATHS = {"/", "/docs", "/openapi.json", "/healthz", "/readyz"}


# ── Lifespan: background finalization ────────────────────────────────


@asynccontextmanager
async def lifespan(app: FastAPI):
    scheduler = None
    if FINALIZER_ENABLED and HEARSAY_ENV != "test":
        scheduler = FinalizationScheduler(get_services().finalizer,
                                          interval=FINALIZE_INTERVAL_SEC)
        scheduler.start()
    app.state.finalization_scheduler = scheduler
    yield
    if scheduler is not None:
        scheduler.stop(timeout=5)


app = FastAPI(title="Hearsay", version="1.0.0", lifespan=lifespan)


def services() -> Hearsay:
    return get_services()


# ── Middleware ────────────────────────────────────────────────────────


class RequestLogMiddleware(BaseHTTPMiddleware):
    """Emit structured access logs. Never logs bodies or signatures."""

    async def dispatch(self, request: Request, call_next):
        started = time.time()
        response = await call_next(request)
        duration_ms = round((time.time() - started) * 1000, 2)
        entry = {
            "event": "api_request",
            "path": request.url.path,
            "method": request.method,
            "status": response.status_code,
            "duration_ms": duration_ms,
        }
        log.info(json.dumps(entry, sort_keys=True))
        return response


app.add_middleware(RequestLogMiddleware)


def _prune_rate_buckets(now: float):
    """Drop clients with no request inside the window, at most once per window."""
    global _rate_pruned_at
    if now - _rate_pruned_at < RATE_LIMIT_WINDOW_SEC:
        return
    _rate_pruned_at = now
    cutoff = now - RATE_LIMIT_WINDOW_SEC
    for ip in [ip for ip, bucket in _RATE_BUCKETS.items() if not bucket or bucket[-1] <= cutoff]:
        del _RATE_BUCKETS[ip]


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Simple in-memory per-client rate limiting."""

    async def dispatch(self, request: Request, call_next):
        if request.url.path in PUBLIC_PATHS:
            return await call_next(request)

        now = time.time()
        _prune_rate_buckets(now)
        client_ip = request.client.host if request.client else "unknown"
        bucket = _RATE_BUCKETS[client_ip]
        while bucket and bucket[0] <= now - RATE_LIMIT_WINDOW_SEC:
            bucket.popleft()

        if len(bucket) >= RATE_LIMIT_REQUESTS:
            return JSONResponse(
                status_code=429,
                content={
                    "ok": False,
                    "error": {"code": "rate_limited", "message": "Too many requests",
                              "retryable": True},
                },
            )

        bucket.append(now)
        return await call_next(request)


app.add_middleware(RateLimitMiddleware)


# ── Error envelope ────────────────────────────────────────────────────


@app.exception_handler(HearsayError)
async def hearsay_exception_handler(_: Request, exc: HearsayError):
    if exc.status_code >= 500:
        log.warning("API %s: %s", exc.code, exc.message)
    return JSONResponse(
        status_code=exc.status_code,
        content={"ok": False, "error": exc.to_dict()},
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(_: Request, exc: HTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content={"ok": False, "error": {"code": "http_error", "message": str(exc.detail)}},
    )


@app.exception_handler(RequestValidationError)
async def request_validation_exception_handler(_: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=422,
        content={
            "ok": False,
            "error": {
                "code": "validation_error",
                "message": "Request validation failed",
                "details": exc.errors(),
            },
        },
    )


# ── Request models ────────────────────────────────────────────────────


class RegisterIn(BaseModel):
    public_key: str = Field(min_length=1)


class RumorIn(BaseModel):
    content: str
    creator_public_key: str
    signature: str
    category: str | None = None
    deadline: float | None = None


class VoteIn(BaseModel):
    rumor_id: int
    voter_public_key: str
    vote_value: StrictBool
    signature: str


class DeleteIn(BaseModel):
    creator_public_key: str
    signature: str


class CommentIn(BaseModel):
    commenter_public_key: str
    content: str = ""
    signature: str
    image_url: str | None = None


# ── Identities ────────────────────────────────────────────────────────


@app.post("/api/register")
def api_register(body: RegisterIn):
    """Register a pseudonymous identity (base64 Ed25519 public key)."""
    identity = services().identities.register(body.public_key)
    return {"ok": True, "identity": identity.to_dict(),
            "probation_ends_at": identity.probation_ends_at}


@app.get("/api/user/{public_key:path}/reputation")
def api_reputation(public_key: str, as_of: float | None = None):
    """Public reputation lookup. `as_of` gives a point-in-time value."""
    svc = services()
    if svc.identities.get(public_key) is None:
        raise NotFoundError("User not found")
    score = svc.engine.get_score(public_key, as_of=as_of)
    return {"ok": True, "reputation": score.to_dict(),
            "penalties": svc.engine.get_penalty_history(public_key)}


# ── Rumors ────────────────────────────────────────────────────────────


@app.post("/api/rumors")
def api_submit_rumor(body: RumorIn):
    rumor = services().rumors.submit(
        body.content, body.creator_public_key, body.signature,
        category=body.category, custom_deadline=body.deadline,
    )
    return {"ok": True, "rumor": rumor.to_dict()}


@app.get("/api/rumors")
def api_list_rumors(limit: int = 200):
    limit = max(1, min(limit, 1000))
    return {"ok": True, "rumors": [r.to_dict() for r in services().rumors.list_rumors(limit)]}


@app.get("/api/rumors/{rumor_id}")
def api_get_rumor(rumor_id: int):
    return {"ok": True, "rumor": services().rumors.get(rumor_id).to_dict()}


@app.delete("/api/rumors/{rumor_id}")
def api_delete_rumor(rumor_id: int, body: DeleteIn):
    """Creator-only hard delete. Signature over DELETE:<rumor_id>."""
    result = services().deletion.delete_rumor(rumor_id, body.creator_public_key,
                                              body.signature)
    return {"ok": True, "deleted": result.rumor_id, **result.to_dict()}


@app.get("/api/rumors/{rumor_id}/score")
def api_trust_score(rumor_id: int, voter_public_key: str | None = None):
    """Trust score. Before finalization, the requester must have voted."""
    score = services().trust.get_trust_score(rumor_id, requester=voter_public_key)
    return {"ok": True, "score": score.to_dict()}


@app.get("/api/rumors/{rumor_id}/comments")
def api_list_comments(rumor_id: int):
    comments = services().rumors.list_comments(rumor_id)
    return {"ok": True, "comments": [c.to_dict() for c in comments]}


@app.post("/api/rumors/{rumor_id}/comments")
def api_post_comment(rumor_id: int, body: CommentIn):
    comment = services().rumors.post_comment(
        rumor_id, body.commenter_public_key, body.content, body.signature,
        image_url=body.image_url,
    )
    return {"ok": True, "comment": comment.to_dict()}


# ── Votes ─────────────────────────────────────────────────────────────


@app.post("/api/vote")
def api_vote(body: VoteIn):
    """Cast a signed vote. One per identity per rumor, before the deadline."""
    vote = services().votes.submit(body.rumor_id, body.voter_public_key,
                                   body.vote_value, body.signature)
    return {"ok": True, "vote": vote.to_dict()}


# ── Audit ─────────────────────────────────────────────────────────────


@app.get("/api/audit/log")
def api_audit_log(since: float | None = None, limit: int = 100,
                  action: str | None = None, target_id: str | None = None):
    entries = services().audit.list_entries(since=since, limit=limit,
                                            action=action, target_id=target_id)
    return {"ok": True, "entries": [e.to_public_dict() for e in entries],
            "count": len(entries)}


@app.get("/api/audit/verify")
def api_audit_verify():
    return {"ok": True, "chain": services().audit.verify_chain()}


# ── Admin ─────────────────────────────────────────────────────────────


def _require_admin(request: Request):
    """Bearer HEARSAY_ADMIN_TOKEN. Open in dev/test when no token is set."""
    admin_token = os.environ.get("HEARSAY_ADMIN_TOKEN", "")
    if not admin_token:
        if AUTH_REQUIRED:
            raise HTTPException(status_code=500,
                                detail="HEARSAY_ADMIN_TOKEN must be set in non-dev environments")
        return

    auth = request.headers.get("Authorization", "")
    token = auth[7:] if auth.startswith("Bearer ") else ""
    if not token or not hmac.compare_digest(token, admin_token):
        raise HTTPException(status_code=401, detail="Unauthorized")


@app.post("/api/admin/finalize")
def api_admin_finalize(request: Request):
    """Run one finalization sweep now."""
    _require_admin(request)
    report = services().finalizer.finalize_due()
    return {"ok": True, "sweep": report.to_dict()}


# ── Health ────────────────────────────────────────────────────────────


@app.get("/healthz")
def healthz():
    return {"ok": True, "status": "healthy", "env": HEARSAY_ENV}


@app.get("/readyz")
def readyz():
    storage = services().db.healthcheck()
    if not storage.get("ok"):
        raise HTTPException(
            status_code=503, detail=f"Storage not ready: {storage.get('error', 'unknown')}"
        )
    scheduler = getattr(app.state, "finalization_scheduler", None)
    return {"ok": True, "status": "ready", "storage": storage,
            "finalizer_running": bool(scheduler and scheduler.running)}


@app.get("/")
def root():
    return {"name": "Hearsay", "status": "running"}


if __name__ == "__main__":
    import uvicorn

    log.info("API STARTING on port 8000")
    uvicorn.run(app, host="0.0.0.0", port=8000)
