#!/usr/bin/env python3
"""
fringestage_vote/cli.py - Command-Line Interface

Usage:
    python -m fringestage_vote.cli --account 0xabc... create-session "Hamlet Preview" "Small Theater"
    python -m fringestage_vote.cli --account 0xdef... vote 0 80 85 75 90 --comment "Loved it"
    python -m fringestage_vote.cli --account 0xabc... end-session 0
    python -m fringestage_vote.cli --account 0xabc... request-decryption 0
    python -m fringestage_vote.cli --account 0xabc... decrypt-results 0 --store
    python -m fringestage_vote.cli results 0
    python -m fringestage_vote.cli verify-log

Exit Codes:
    0 = OK
    1 = Rejected by the engine (or broken event log)
    2 = Usage or I/O error
"""
import argparse
import json
import logging
import sys

from .client import AudienceClient, TheaterClient, DEFAULT_SESSION_DURATION
from .config import Settings
from .engine import build_engine
from .errors import EngineRevert
from .ledger import verify_event_log
from .models import DIMENSIONS, DecryptedResults

logger = logging.getLogger(__name__)


def main():
    """
    Parse command-line arguments and dispatch one fringestage-vote command.

    Global options select the acting address and override the database URL
    and key file from the environment settings.
    """
    parser = argparse.ArgumentParser(
        prog="fringestage-vote",
        description="Encrypted audience voting for theater performances"
    )
    parser.add_argument("--account", "-a", help="Address acting as the caller")
    parser.add_argument("--database", help="SQLAlchemy URL (overrides DATABASE_URL)")
    parser.add_argument("--key-file", help="Coprocessor key file (overrides FHE_KEY_PATH)")

    subparsers = parser.add_subparsers(dest="command", required=True)

    create_parser = subparsers.add_parser("create-session", help="Open a voting session")
    create_parser.add_argument("title")
    create_parser.add_argument("venue")
    create_parser.add_argument("--duration", type=int, default=DEFAULT_SESSION_DURATION,
                               help="Voting window length in seconds")
    create_parser.add_argument("--start-time", type=int, help="Unix seconds; defaults to now")

    vote_parser = subparsers.add_parser("vote", help="Encrypt and submit a rating")
    vote_parser.add_argument("session_id", type=int)
    for dim in DIMENSIONS:
        vote_parser.add_argument(dim.value, type=int)
    vote_parser.add_argument("--comment", default="", help="Hashed locally, never sent")

    info_parser = subparsers.add_parser("session-info", help="Show session state")
    info_parser.add_argument("session_id", type=int)

    end_parser = subparsers.add_parser("end-session", help="Close voting")
    end_parser.add_argument("session_id", type=int)

    auth_parser = subparsers.add_parser("authorize", help="Authorize an address to decrypt")
    auth_parser.add_argument("session_id", type=int)
    auth_parser.add_argument("address")

    request_parser = subparsers.add_parser("request-decryption", help="Request decryption of the totals")
    request_parser.add_argument("session_id", type=int)

    decrypt_parser = subparsers.add_parser("decrypt-results", help="Decrypt the totals")
    decrypt_parser.add_argument("session_id", type=int)
    decrypt_parser.add_argument("--store", action="store_true", help="Publish the decrypted totals")

    store_parser = subparsers.add_parser("store-decrypted", help="Publish plaintext totals")
    store_parser.add_argument("session_id", type=int)
    for dim in DIMENSIONS:
        store_parser.add_argument(f"total_{dim.value}", type=int)

    results_parser = subparsers.add_parser("results", help="Show published results")
    results_parser.add_argument("session_id", type=int)

    subparsers.add_parser("verify-log", help="Verify the event log hash chain")

    args = parser.parse_args()

    overrides = {}
    if args.database:
        overrides["DATABASE_URL"] = args.database
    if args.key_file:
        overrides["FHE_KEY_PATH"] = args.key_file
    settings = Settings(**overrides)
    logging.basicConfig(level=settings.LOG_LEVEL)

    if args.command in ACCOUNT_COMMANDS and not args.account:
        parser.error(f"{args.command} requires --account")

    try:
        engine = build_engine(settings)
    except (OSError, ValueError) as e:
        print(f"Error: Could not open engine: {e}", file=sys.stderr)
        sys.exit(2)

    try:
        COMMANDS[args.command](engine, settings, args)
    except EngineRevert as e:
        print(f"Rejected: {e.code.value}: {e.revert.message}", file=sys.stderr)
        sys.exit(1)
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(2)
    finally:
        engine.ledger.store.dispose()


def run_create_session(engine, settings, args):
    theater = TheaterClient(engine, args.account, settings)
    session_id = theater.create_session(args.title, args.venue, args.duration, args.start_time)
    print(f"Session created: {session_id}")


def run_vote(engine, settings, args):
    audience = AudienceClient(engine, args.account, settings)
    audience.vote(
        args.session_id,
        args.plot_tension,
        args.performance,
        args.stage_design,
        args.pacing,
        comment=args.comment,
    )
    print(f"Vote submitted to session {args.session_id}")


def run_session_info(engine, settings, args):
    print(json.dumps(engine.get_session_info(args.session_id).to_dict(), indent=2))


def run_end_session(engine, settings, args):
    TheaterClient(engine, args.account, settings).end_session(args.session_id)
    print(f"Session {args.session_id} ended")


def run_authorize(engine, settings, args):
    TheaterClient(engine, args.account, settings).authorize(args.session_id, args.address)
    print(f"Authorized {args.address.lower()} for session {args.session_id}")


def run_request_decryption(engine, settings, args):
    TheaterClient(engine, args.account, settings).request_decryption(args.session_id)
    print(f"Decryption requested for session {args.session_id}")


def run_decrypt_results(engine, settings, args):
    theater = TheaterClient(engine, args.account, settings)
    if args.store:
        results = theater.decrypt_and_store(args.session_id)
    else:
        totals = theater.decrypt_aggregates(args.session_id)
        vote_count = engine.get_session_info(args.session_id).vote_count
        results = DecryptedResults.from_totals(args.session_id, vote_count, totals)
    _print_results(results)
    if args.store:
        print("Results stored")


def run_store_decrypted(engine, settings, args):
    engine.store_decrypted_results(
        args.account,
        args.session_id,
        args.total_plot_tension,
        args.total_performance,
        args.total_stage_design,
        args.total_pacing,
    )
    print(f"Results stored for session {args.session_id}")


def run_results(engine, settings, args):
    print(json.dumps(engine.get_decrypted_results(args.session_id).to_dict(), indent=2))


def run_verify_log(engine, settings, args):
    report = verify_event_log(engine.events())
    print(f"Event Count:  {report.event_count}")
    print(f"Final Hash:   {report.final_event_hash}")
    if not report.ok:
        print(f"BROKEN at sequence {report.first_break}: {report.reason}")
        sys.exit(1)
    print("Chain OK")


def _print_results(results: DecryptedResults):
    print(f"Session {results.session_id} ({results.vote_count} votes)")
    totals, averages = results.totals(), results.averages()
    for dim in DIMENSIONS:
        print(f"  {dim.value:<14} total={totals[dim]:<6} avg={averages[dim]}")


COMMANDS = {
    "create-session": run_create_session,
    "vote": run_vote,
    "session-info": run_session_info,
    "end-session": run_end_session,
    "authorize": run_authorize,
    "request-decryption": run_request_decryption,
    "decrypt-results": run_decrypt_results,
    "store-decrypted": run_store_decrypted,
    "results": run_results,
    "verify-log": run_verify_log,
}

ACCOUNT_COMMANDS = {
    "create-session", "vote", "end-session", "authorize",
    "request-decryption", "decrypt-results", "store-decrypted",
}


if __name__ == "__main__":
    main()
