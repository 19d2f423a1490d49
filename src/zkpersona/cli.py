#!/usr/bin/env python3
"""
zkpersona CLI — Offline command-line interface.

Works directly against the credential store (SQLite by default), no server
required.

Commands:
    score         - Aggregated score and per-provider breakdown
    verifications - List stored credentials with status and expiry
    add           - Record a verified credential
    forget        - Delete one provider's credential
    nullifier     - Derive a nullifier for (nonce, appId)
    commit        - Score or stamps commitment
    select        - Fixed-slot stamp selection from a JSON file
    serve         - Run the REST API (needs uvicorn)
"""

import argparse
import json
import sys
from contextlib import contextmanager
from typing import Iterator, Optional

from zkpersona.commitments import CommitmentEngine
from zkpersona.config import Settings
from zkpersona.errors import PassportError
from zkpersona.nullifier import NullifierDerivation
from zkpersona.providers import get_provider
from zkpersona.scoring import ScoreAggregator
from zkpersona.selection import (
    calculate_stamp_score,
    can_meet_score_requirement,
    prepare_for_aggregation,
    prepare_for_proof,
)
from zkpersona.sessions import VerificationCriterion, VerificationResult
from zkpersona.storage import CredentialStore, SQLiteBackend, backend_from_settings


def _output(data: dict, args: argparse.Namespace, human_fn=None):
    """Output data as JSON or pretty-printed."""
    if getattr(args, "json", False) or human_fn is None:
        print(json.dumps(data, indent=2, default=str))
    else:
        human_fn(data)


def _settings(args: argparse.Namespace) -> Settings:
    settings = Settings.from_env()
    if getattr(args, "scheme", None):
        settings.commitment_scheme = args.scheme
    return settings


@contextmanager
def _open_store(args: argparse.Namespace) -> Iterator[CredentialStore]:
    settings = _settings(args)
    if args.db:
        backend = SQLiteBackend(args.db)
    elif settings.storage_backend == "memory":
        # a memory store would forget everything between invocations
        backend = SQLiteBackend(settings.storage_path)
    else:
        backend = backend_from_settings(settings)
    try:
        yield CredentialStore(backend, engine=CommitmentEngine.from_settings(settings))
    finally:
        backend.close()


# ─── Commands ──────────────────────────────────────────────────────

def cmd_score(args):
    with _open_store(args) as store:
        summary = ScoreAggregator().get_breakdown(store.load(args.wallet))
    result = {"userId": args.wallet, **summary.to_dict()}

    def human(d):
        print(f"Score for {d['userId']}: {d['totalScore']:g}")
        for provider, entry in sorted(d["breakdown"].items()):
            print(f"   {provider:<10} {entry['score']:>6g} / {entry['maxScore']:g}")
        print(f"   {d['verifiedCount']} valid credential(s)")

    _output(result, args, human)
    return result


def cmd_verifications(args):
    with _open_store(args) as store:
        views = [c.to_view() for c in store.load(args.wallet).values()]
    views.sort(key=lambda v: v["provider"])
    result = {"userId": args.wallet, "verifications": views, "count": len(views)}

    def human(d):
        if not d["verifications"]:
            print(f"No credentials for {d['userId']}")
        for v in d["verifications"]:
            print(f"   {v['provider']:<10} {v['status']:<12} score={v['score']:g} "
                  f"days_left={v['daysRemaining']}")

    _output(result, args, human)
    return result


def cmd_add(args):
    provider = get_provider(args.provider).name
    criteria = [VerificationCriterion(condition=c, points=0) for c in (args.criterion or [])]
    with _open_store(args) as store:
        credential = store.save_result(args.wallet, VerificationResult(
            provider=provider,
            subject_id=args.subject or "",
            score=args.score,
            criteria=criteria,
        ))
    result = {"userId": args.wallet, **credential.to_dict()}
    _output(result, args, lambda d: print(f"Saved {d['provider']} credential (score {d['score']:g})"))
    return result


def cmd_forget(args):
    with _open_store(args) as store:
        deleted = store.remove(args.wallet, args.provider)
    result = {"userId": args.wallet, "provider": args.provider, "deleted": deleted}
    _output(result, args, lambda d: print(
        f"Removed {d['provider']}" if d["deleted"] else f"No {d['provider']} credential found"
    ))
    if not deleted:
        sys.exit(1)
    return result


def cmd_nullifier(args):
    derivation = NullifierDerivation.from_settings(_settings(args))
    result = {
        "nonce": args.nonce,
        "appId": args.app_id,
        "scheme": derivation.scheme.name,
        "nullifier": derivation.derive(args.nonce, args.app_id),
    }
    _output(result, args, lambda d: print(d["nullifier"]))
    return result


def cmd_commit(args):
    engine = CommitmentEngine.from_settings(_settings(args))
    if args.stamps:
        value = engine.stamps_commitment(args.stamps)
        kind = "stamps"
    else:
        if args.score is None or args.secret is None:
            print("commit needs --score and --secret, or --stamps", file=sys.stderr)
            sys.exit(2)
        value = engine.score_commitment(args.score, args.secret)
        kind = "score"
    result = {"kind": kind, "scheme": engine.scheme.name, "commitment": value}
    _output(result, args, lambda d: print(d["commitment"]))
    return result


def cmd_select(args):
    with open(args.file) as f:
        stamps = json.load(f)
    if not isinstance(stamps, list):
        print("Expected a JSON array of stamps", file=sys.stderr)
        sys.exit(2)
    prepare = prepare_for_aggregation if args.mode == "aggregation" else prepare_for_proof
    slots = [s.to_dict() for s in prepare(stamps, max_slots=args.slots)]
    result = {
        "mode": args.mode,
        "slots": slots,
        "score": calculate_stamp_score(stamps),
    }
    if args.min_score is not None:
        result["minScore"] = args.min_score
        result["meetsRequirement"] = can_meet_score_requirement(stamps, args.min_score)

    def human(d):
        for i, s in enumerate(d["slots"], 1):
            label = "(padding)" if s["stamp_id"] == 0 else f"stamp {s['stamp_id']} ({s['points']} pts)"
            print(f"   slot {i}: {label}")
        print(f"   stamp score: {d['score']}")
        if "meetsRequirement" in d:
            print(f"   meets minScore {d['minScore']}: {'yes' if d['meetsRequirement'] else 'no'}")

    _output(result, args, human)
    return result


def cmd_serve(args):
    import uvicorn

    uvicorn.run("zkpersona.api:create_app", factory=True, host=args.host, port=args.port)


# ─── Parser ────────────────────────────────────────────────────────

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="zkpersona", description="Privacy-preserving humanity credentials")
    parser.add_argument("--json", action="store_true", help="Machine-readable output")
    sub = parser.add_subparsers(dest="command")

    def store_args(p):
        p.add_argument("--db", help="SQLite database path (default: STORAGE_PATH)")

    p = sub.add_parser("score", help="Aggregated score for a wallet")
    p.add_argument("wallet")
    store_args(p)

    p = sub.add_parser("verifications", help="List a wallet's credentials")
    p.add_argument("wallet")
    store_args(p)

    p = sub.add_parser("add", help="Record a verified credential")
    p.add_argument("wallet")
    p.add_argument("provider")
    p.add_argument("--score", type=float, required=True)
    p.add_argument("--subject", help="Provider-side account id (hashed, never stored)")
    p.add_argument("--criterion", action="append", help="Achieved criterion (repeatable)")
    store_args(p)

    p = sub.add_parser("forget", help="Delete a provider credential")
    p.add_argument("wallet")
    p.add_argument("provider")
    store_args(p)

    p = sub.add_parser("nullifier", help="Derive a nullifier")
    p.add_argument("nonce")
    p.add_argument("app_id")
    p.add_argument("--scheme", choices=["keyed", "arithmetic"])

    p = sub.add_parser("commit", help="Score or stamps commitment")
    p.add_argument("--score")
    p.add_argument("--secret")
    p.add_argument("--stamps", nargs="+", help="Stamp ids (up to 5)")
    p.add_argument("--scheme", choices=["keyed", "arithmetic"])

    p = sub.add_parser("select", help="Prepare stamp slots from a JSON file")
    p.add_argument("file")
    p.add_argument("--mode", choices=["proof", "aggregation"], default="proof")
    p.add_argument("--slots", type=int, default=5)
    p.add_argument("--min-score", type=int, dest="min_score")

    p = sub.add_parser("serve", help="Run the REST API")
    p.add_argument("--host", default="127.0.0.1")
    p.add_argument("--port", type=int, default=3001)

    return parser


def main(argv: Optional[list[str]] = None) -> Optional[dict]:
    """CLI entry point. Returns result dict for testing."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        sys.exit(1)

    commands = {
        "score": cmd_score,
        "verifications": cmd_verifications,
        "add": cmd_add,
        "forget": cmd_forget,
        "nullifier": cmd_nullifier,
        "commit": cmd_commit,
        "select": cmd_select,
        "serve": cmd_serve,
    }

    try:
        return commands[args.command](args)
    except FileNotFoundError as e:
        print(f"File not found: {e}", file=sys.stderr)
        sys.exit(1)
    except (PassportError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
