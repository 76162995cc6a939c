import argparse
import json
import sys
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path
from typing import Any, Dict, Optional

from sqlalchemy import func, select
from sqlalchemy.orm import sessionmaker

from . import __version__
from .abis.correlator import AbisResponseCorrelator
from .abis.dispatcher import AbisDispatcher, HttpAbisDispatcher, OutboxFileDispatcher
from .abis.tracker import AbisRequestTracker
from .bio_reference import BioReferenceStore
from .config import Settings, load_settings
from .database import (
    AbisRequest,
    ManualOutcome,
    ManualVerificationTask,
    MatchType,
    RegistrationTransaction,
    create_session_factory,
    init_database,
    session_scope,
)
from .engine import DecisionResult, DedupDecisionEngine
from .env import load_env
from .errors import DedupError
from .logger import get_logger
from .manual_verification import ManualVerificationQueue
from .retry import CircuitBreaker, RetryError
from .schema import validate_abis_response
from .sweeper import sweep_stale_requests

logger = get_logger()


@dataclass
class Components:
    session_factory: sessionmaker
    references: BioReferenceStore
    tracker: AbisRequestTracker
    correlator: AbisResponseCorrelator
    queue: ManualVerificationQueue
    engine: DedupDecisionEngine


def build_dispatcher(settings: Settings) -> AbisDispatcher:
    if settings.dispatch_mode == "http":
        return HttpAbisDispatcher(settings.abis_endpoint_url)
    return OutboxFileDispatcher(settings.outbox_path)


def build_components(settings: Settings, dispatcher: Optional[AbisDispatcher] = None) -> Components:
    """Wire every component against the configured database."""
    init_database(settings.db_path)
    session_factory = create_session_factory(settings.db_path)
    references = BioReferenceStore(session_factory)
    tracker = AbisRequestTracker(
        session_factory,
        dispatcher or build_dispatcher(settings),
        abis_app_code=settings.abis_app_code,
        reference_url_template=settings.reference_url_template,
        circuit_breaker=CircuitBreaker(
            failure_threshold=settings.circuit_failure_threshold,
            recovery_timeout=settings.circuit_recovery_seconds,
        ),
    )
    correlator = AbisResponseCorrelator(session_factory, settings.duplicate_response_policy)
    queue = ManualVerificationQueue(session_factory)
    engine = DedupDecisionEngine(
        session_factory,
        references,
        tracker,
        correlator,
        queue,
        policy=settings.policy,
        max_retries=settings.max_retries,
        retry_base_delay=settings.retry_base_delay,
        max_resubmissions=settings.max_resubmissions,
    )
    return Components(session_factory, references, tracker, correlator, queue, engine)


def _print_json(data: Any) -> None:
    print(json.dumps(data, indent=2, default=str))


def _read_json(path: str) -> Any:
    input_path = Path(path)
    if not input_path.exists():
        raise SystemExit(f"Input file not found: {input_path}")
    with input_path.open("r", encoding="utf-8") as f:
        return json.load(f)


def _result_dict(result: Optional[DecisionResult]) -> Optional[Dict[str, Any]]:
    if result is None:
        return None
    return {
        "transactionId": result.transaction_id,
        "decision": result.decision.value,
        "status": result.status.value,
        "matchedRefId": result.matched_ref_id,
        "candidates": [{"referenceId": c.matched_ref_id, "score": c.score} for c in result.candidates],
    }


def _task_dict(task: Optional[ManualVerificationTask]) -> Optional[Dict[str, Any]]:
    if task is None:
        return None
    return {
        "registrationId": task.registration_id,
        "matchedRefId": task.matched_ref_id,
        "transactionId": task.transaction_id,
        "matchType": task.match_type.value,
        "status": task.status.value,
        "verifierId": task.verifier_id,
        "outcome": task.outcome.value if task.outcome else None,
        "createdAt": task.created_at,
    }


def cmd_init_db(args: argparse.Namespace, settings: Settings) -> None:
    init_database(settings.db_path)
    print(f"Database ready: {settings.db_path}")


def cmd_register(args: argparse.Namespace, settings: Settings) -> None:
    c = build_components(settings)
    ref_ids = [c.references.create_reference(args.registration_id) for _ in range(args.references)]
    transaction_id = c.engine.open_transaction(args.registration_id)
    _print_json({"transactionId": transaction_id, "registrationId": args.registration_id, "bioRefIds": ref_ids})


def cmd_start(args: argparse.Namespace, settings: Settings) -> None:
    c = build_components(settings)
    batch_id = c.engine.run_with_retry(args.transaction_id, c.engine.start_dedup, args.transaction_id)
    _print_json({"transactionId": args.transaction_id, "batchId": batch_id})


def cmd_ingest_response(args: argparse.Namespace, settings: Settings) -> None:
    c = build_components(settings)
    data = _read_json(args.input)
    payloads = data if isinstance(data, list) else [data]
    results = []
    for payload in payloads:
        try:
            results.append({"ok": True, "decision": _result_dict(c.engine.process_payload(payload))})
        except ValueError as e:
            results.append({"ok": False, "error": str(e)})
        except DedupError as e:
            logger.record_error(e.kind.value)
            results.append({"ok": False, "error": e.to_dict()})
    _print_json(results)
    if not all(r["ok"] for r in results):
        raise SystemExit(2)


def cmd_expire(args: argparse.Namespace, settings: Settings) -> None:
    c = build_components(settings)
    seconds = args.timeout if args.timeout is not None else settings.request_timeout_seconds
    expired, resubmitted, failed = sweep_stale_requests(c.tracker, c.engine, timedelta(seconds=seconds))
    _print_json({"expired": expired, "resubmitted": resubmitted, "failed": failed})


def cmd_assign(args: argparse.Namespace, settings: Settings) -> None:
    c = build_components(settings)
    match_type = MatchType(args.match_type) if args.match_type else None
    task = c.queue.assign_next(args.verifier_id, match_type)
    if task is None:
        print("No pending tasks.")
        return
    _print_json(_task_dict(task))


def cmd_resolve(args: argparse.Namespace, settings: Settings) -> None:
    c = build_components(settings)
    result = c.engine.resolve_manual_verification(
        args.registration_id,
        args.matched_ref_id,
        args.verifier_id,
        ManualOutcome(args.outcome),
        reason_code=args.reason_code,
    )
    if result is None:
        print("Outcome recorded; other tasks of the transaction are still open.")
        return
    _print_json(_result_dict(result))


def cmd_pending(args: argparse.Namespace, settings: Settings) -> None:
    c = build_components(settings)
    match_type = MatchType(args.match_type) if args.match_type else None
    print(c.queue.get_pending_count(match_type))


def cmd_status(args: argparse.Namespace, settings: Settings) -> None:
    c = build_components(settings)
    txn = c.engine.get_transaction(args.transaction_id)
    _print_json({
        "transactionId": txn.transaction_id,
        "registrationId": txn.registration_id,
        "status": txn.status.value,
        "comment": txn.status_comment,
        "requests": [
            {
                "requestId": r.request_id,
                "bioRefId": r.bio_ref_id,
                "batchId": r.batch_id,
                "requestType": r.request_type.value,
                "status": r.status.value,
            }
            for r in c.tracker.get_requests_by_transaction(txn.transaction_id)
        ],
        "manualTasks": [_task_dict(t) for t in c.queue.get_tasks_for_transaction(txn.transaction_id)],
        "dedupeEntries": [
            {
                "matchedRefId": e.matched_ref_id,
                "matchedRegistrationId": e.matched_registration_id,
                "active": e.is_active,
            }
            for e in c.engine.get_dedupe_entries(txn.transaction_id)
        ],
    })


def cmd_validate(args: argparse.Namespace, settings: Settings) -> None:
    data = _read_json(args.input)
    errors = validate_abis_response(data)
    if errors:
        print("Invalid:")
        for e in errors:
            print(f" - {e}")
        raise SystemExit(2)
    print("Valid")


def status_counts(session_factory: sessionmaker) -> Dict[str, Dict[str, int]]:
    """Row counts per status for transactions, requests and manual tasks."""
    counts: Dict[str, Dict[str, int]] = {}
    with session_scope(session_factory) as session:
        for name, column in (
            ("transactions", RegistrationTransaction.status),
            ("requests", AbisRequest.status),
            ("manualTasks", ManualVerificationTask.status),
        ):
            rows = session.execute(select(column, func.count()).group_by(column)).all()
            counts[name] = {status.value: n for status, n in rows}
    return counts


def cmd_metrics(args: argparse.Namespace, settings: Settings) -> None:
    c = build_components(settings)
    _print_json(status_counts(c.session_factory))


def main(argv=None):
    load_env()
    parser = argparse.ArgumentParser(prog="abis-dedup", description="ABIS biometric dedup workers")
    parser.add_argument("--version", action="store_true", help="Show version")

    subparsers = parser.add_subparsers(dest="command")
    sub = subparsers.add_parser("init-db", help="Create the database tables")
    sub.set_defaults(func=cmd_init_db)

    sub = subparsers.add_parser("register", help="Record a packet: biometric references plus a transaction")
    sub.add_argument("--registration-id", required=True, help="Registration (packet) id")
    sub.add_argument("--references", type=int, default=1, help="Number of biometric references to create (default 1)")
    sub.set_defaults(func=cmd_register)

    sub = subparsers.add_parser("start", help="Submit INSERT/IDENTIFY requests for a transaction")
    sub.add_argument("--transaction-id", required=True)
    sub.set_defaults(func=cmd_start)

    sub = subparsers.add_parser("ingest-response", help="Ingest ABIS response JSON (object or list)")
    sub.add_argument("--input", required=True, help="Path to response JSON")
    sub.set_defaults(func=cmd_ingest_response)

    sub = subparsers.add_parser("expire", help="Expire stale requests and resubmit or fail them")
    sub.add_argument("--timeout", type=int, help="Seconds a request may stay SENT (default: DEDUP_REQUEST_TIMEOUT_SECONDS)")
    sub.set_defaults(func=cmd_expire)

    sub = subparsers.add_parser("assign", help="Claim the oldest pending manual verification task")
    sub.add_argument("--verifier-id", required=True)
    sub.add_argument("--match-type", choices=[m.value for m in MatchType])
    sub.set_defaults(func=cmd_assign)

    sub = subparsers.add_parser("resolve", help="Record a manual verification outcome")
    sub.add_argument("--registration-id", required=True)
    sub.add_argument("--matched-ref-id", required=True)
    sub.add_argument("--verifier-id", required=True)
    sub.add_argument("--outcome", required=True, choices=[o.value for o in ManualOutcome])
    sub.add_argument("--reason-code", help="Optional verifier reason code")
    sub.set_defaults(func=cmd_resolve)

    sub = subparsers.add_parser("pending", help="Count pending manual verification tasks")
    sub.add_argument("--match-type", choices=[m.value for m in MatchType])
    sub.set_defaults(func=cmd_pending)

    sub = subparsers.add_parser("status", help="Show a transaction with its requests, tasks and dedupe entries")
    sub.add_argument("--transaction-id", required=True)
    sub.set_defaults(func=cmd_status)

    sub = subparsers.add_parser("validate", help="Validate an ABIS response JSON")
    sub.add_argument("--input", required=True, help="Path to response JSON")
    sub.set_defaults(func=cmd_validate)

    sub = subparsers.add_parser("metrics", help="Show counts per status")
    sub.set_defaults(func=cmd_metrics)

    args = parser.parse_args(argv)

    if args.version:
        print(__version__)
        return

    if not hasattr(args, "func"):
        parser.print_help()
        return

    try:
        settings = load_settings()
    except ValueError as e:
        raise SystemExit(f"Configuration error: {e}")
    logger.configure(level=settings.log_level, log_dir=settings.log_dir, enable_file=True)

    try:
        args.func(args, settings)
    except DedupError as e:
        logger.record_error(e.kind.value)
        print(json.dumps({"error": e.to_dict()}), file=sys.stderr)
        raise SystemExit(1)
    except RetryError as e:
        print(f"Retries exhausted: {e}", file=sys.stderr)
        raise SystemExit(1)


if __name__ == "__main__":
    main()
