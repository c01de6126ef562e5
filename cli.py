#!/usr/bin/env python3
# Hearsay CLI
# argparse. Operator tooling for the server side, plus key helpers for clients.

import argparse
import json
import sys
import time

from errors import HearsayError
from finalizer import FINALIZE_INTERVAL_SEC, FinalizationScheduler, setup_logging
from services import get_services
from signing import generate_keypair, private_key_from_b64, private_key_to_b64, sign


def cmd_serve(args):
    """Start the API server."""
    import uvicorn
    from api import app
    print(f"Starting Hearsay API on port {args.port}...")
    uvicorn.run(app, host=args.bind, port=args.port)


def cmd_finalize(args):
    """Run one finalization sweep."""
    report = get_services().finalizer.finalize_due()
    if args.json:
        print(json.dumps(report.to_dict(), indent=2))
        return
    if not report.candidates:
        print("Nothing to finalize.")
        return
    for o in report.finalized:
        verdict = "TRUE" if o.outcome else "FALSE"
        print(f"  Finalized #{o.rumor_id}: {o.trust_score:.1f} ({o.total_votes} votes) -> {verdict}")
    for rumor_id in report.skipped:
        print(f"  Skipped #{rumor_id} (already finalized or removed)")
    for rumor_id, err in report.failed.items():
        print(f"  FAILED #{rumor_id}: {err}")


def cmd_watch(args):
    """Run the finalization loop in the foreground."""
    scheduler = FinalizationScheduler(get_services().finalizer, interval=args.interval)
    print(f"Starting finalizer (interval: {args.interval}s)...")
    scheduler.start()
    try:
        while scheduler.running:
            time.sleep(1)
    except KeyboardInterrupt:
        print("\nFinalizer stopped.")
    finally:
        scheduler.stop(timeout=5)


def cmd_reputation(args):
    """Show reputation and its breakdown for an identity."""
    svc = get_services()
    if svc.identities.get(args.public_key) is None:
        raise SystemExit(f"Unknown identity: {args.public_key}")
    score = svc.engine.get_score(args.public_key, as_of=args.as_of)
    d = score.to_dict()
    print(f"Identity: {args.public_key}")
    print(f"  Reputation: {d['reputation']:.1f}" + (" (cached)" if d["cached"] else ""))
    print(f"  Weight:     {d['weight']:.1f}")
    if not d["cached"]:
        print(f"  Votes:      {d['votes_correct']}/{d['votes_scored']} correct "
              f"({d['vote_points']:+.2f})")
        print(f"  Authored:   {d['rumors_authored']} finalized ({d['authorship_points']:+.2f})")
        print(f"  Penalties:  {d['penalty_points']:+.2f}")
    for p in svc.engine.get_penalty_history(args.public_key):
        print(f"    {p['penalty']:+.1f}  {p['reason']}")


def cmd_score(args):
    """Show the trust score of a rumor (operator view, no vote-to-see)."""
    score = get_services().trust.get_trust_score(args.rumor_id)
    d = score.to_dict()
    state = "FINALIZED" if d["finalized"] else "OPEN"
    print(f"Rumor #{d['rumor_id']} [{state}]")
    print(f"  Trust score: {d['trust_score']:.1f}")
    print(f"  Votes:       {d['vote_count']}")
    if d["finalized"]:
        print(f"  Outcome:     {'TRUE' if d['outcome'] else 'FALSE'}")


def cmd_audit(args):
    """Print recent audit entries, or verify the hash chain."""
    audit = get_services().audit
    if args.verify:
        result = audit.verify_chain()
        if result["valid"]:
            print(f"Audit chain OK ({result['entries_checked']} entries)")
            return
        print(f"Audit chain BROKEN at {result['broken_at']}: {result.get('reason', '')}")
        sys.exit(2)

    entries = audit.list_entries(limit=args.limit, action=args.action)
    if not entries:
        print("No audit entries.")
        return
    for e in entries:
        actor = (e.actor_public_key or "system")[:12]
        ts = time.strftime("%Y-%m-%d %H:%M:%S", time.localtime(e.timestamp))
        print(f"  {ts} {e.action_type:<8} target={e.target_id or '-'} actor={actor} "
              f"hash={e.entry_hash[:12]}")


def cmd_keygen(args):
    """Generate an Ed25519 identity. Prints the private key once; keep it safe."""
    private_key, public_key = generate_keypair()
    print(json.dumps({"public_key": public_key,
                      "private_key": private_key_to_b64(private_key)}, indent=2))


def cmd_sign(args):
    """Sign a canonical message (e.g. 'VOTE:12:true') with a base64 private key."""
    private_key = private_key_from_b64(args.private_key)
    print(sign(private_key, args.message))


def main(argv=None):
    parser = argparse.ArgumentParser(
        prog="hearsay",
        description="Hearsay: anonymous rumors, reputation-weighted truth",
    )
    sub = parser.add_subparsers(dest="command")

    # hearsay serve
    p_serve = sub.add_parser("serve", help="Start the API server")
    p_serve.add_argument("--bind", default="0.0.0.0", help="Bind address")
    p_serve.add_argument("--port", type=int, default=8000, help="Port")
    p_serve.set_defaults(func=cmd_serve)

    # hearsay finalize
    p_fin = sub.add_parser("finalize", help="Finalize every rumor past its deadline, once")
    p_fin.add_argument("--json", action="store_true", help="Print the sweep report as JSON")
    p_fin.set_defaults(func=cmd_finalize)

    # hearsay watch
    p_watch = sub.add_parser("watch", help="Run the finalization loop in the foreground")
    p_watch.add_argument("--interval", type=float, default=FINALIZE_INTERVAL_SEC,
                         help="Seconds between sweeps")
    p_watch.set_defaults(func=cmd_watch)

    # hearsay reputation <public_key>
    p_rep = sub.add_parser("reputation", help="Show reputation for an identity")
    p_rep.add_argument("public_key", help="Base64 Ed25519 public key")
    p_rep.add_argument("--as-of", dest="as_of", type=float, default=None,
                       help="Point-in-time computation (epoch seconds)")
    p_rep.set_defaults(func=cmd_reputation)

    # hearsay score <rumor_id>
    p_score = sub.add_parser("score", help="Show the trust score of a rumor")
    p_score.add_argument("rumor_id", type=int, help="Rumor ID")
    p_score.set_defaults(func=cmd_score)

    # hearsay audit
    p_audit = sub.add_parser("audit", help="Show the audit log")
    p_audit.add_argument("--verify", action="store_true", help="Verify the hash chain")
    p_audit.add_argument("--limit", type=int, default=20, help="Number of entries")
    p_audit.add_argument("--action", default=None, help="Filter by action type")
    p_audit.set_defaults(func=cmd_audit)

    # hearsay keygen
    p_keygen = sub.add_parser("keygen", help="Generate an Ed25519 identity")
    p_keygen.set_defaults(func=cmd_keygen)

    # hearsay sign <private_key> <message>
    p_sign = sub.add_parser("sign", help="Sign a message with a base64 private key")
    p_sign.add_argument("private_key", help="Base64 raw Ed25519 private key")
    p_sign.add_argument("message", help="Canonical message, e.g. DELETE:12")
    p_sign.set_defaults(func=cmd_sign)

    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        sys.exit(1)

    if args.command in ("watch", "serve"):
        setup_logging()

    try:
        args.func(args)
    except HearsayError as e:
        print(f"Error: {e.message}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
