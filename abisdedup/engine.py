"""
Dedup Decision Engine.

Responsibilities:
- Drive a registration transaction from packet arrival to a terminal
  decision: issue ABIS requests, react to completed batches, apply the
  conclusiveness policy, escalate to manual verification.
- Own RegistrationTransaction status, dedupe list entries and the
  per-registration identity record.

Non-Responsibilities:
- No request or task status changes (tracker and queue own them).
- No biometric matching.

Invariant:
Every status change is a guarded conditional update from the expected
current status, so concurrent workers reaching the same decision record it
once. Terminal statuses are never left.
"""

import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from sqlalchemy import select, update
from sqlalchemy.orm import Session, sessionmaker

from .abis.correlator import (
    AbisResponseCorrelator,
    Candidate,
    ConclusivenessPolicy,
    DedupDecision,
)
from .abis.tracker import AbisRequestTracker
from .bio_reference import BioReferenceStore
from .database import (
    DedupeListEntry,
    DedupeType,
    IndividualDedupeEntry,
    ManualOutcome,
    MatchType,
    RegistrationTransaction,
    RequestStatus,
    RequestType,
    TaskStatus,
    TERMINAL_STATUSES,
    TransactionStatus,
    session_scope,
)
from .errors import DedupError, ErrorKind
from .logger import get_logger
from .manual_verification import ManualVerificationQueue
from .retry import RetryError, exponential_backoff, is_transient_error
from .schema import parse_abis_response

logger = get_logger()

ALLOWED_TRANSITIONS: Dict[TransactionStatus, frozenset] = {
    TransactionStatus.RECEIVED: frozenset({TransactionStatus.IN_PROGRESS, TransactionStatus.FAILED}),
    TransactionStatus.IN_PROGRESS: frozenset({
        TransactionStatus.COMPLETED,
        TransactionStatus.DUPLICATE_FOUND,
        TransactionStatus.AWAITING_MANUAL_REVIEW,
        TransactionStatus.FAILED,
    }),
    TransactionStatus.AWAITING_MANUAL_REVIEW: frozenset({
        TransactionStatus.COMPLETED,
        TransactionStatus.DUPLICATE_FOUND,
        TransactionStatus.FAILED,
    }),
}


@dataclass
class DecisionResult:
    transaction_id: str
    decision: DedupDecision
    status: TransactionStatus
    matched_ref_id: Optional[str] = None
    candidates: List[Candidate] = field(default_factory=list)


class DedupDecisionEngine:
    def __init__(
        self,
        session_factory: sessionmaker,
        references: BioReferenceStore,
        tracker: AbisRequestTracker,
        correlator: AbisResponseCorrelator,
        queue: ManualVerificationQueue,
        policy: Optional[ConclusivenessPolicy] = None,
        max_retries: int = 3,
        retry_base_delay: float = 1.0,
        max_resubmissions: int = 2,
    ):
        self._session_factory = session_factory
        self.references = references
        self.tracker = tracker
        self.correlator = correlator
        self.queue = queue
        self.policy = policy or ConclusivenessPolicy()
        self.max_retries = max_retries
        self.retry_base_delay = retry_base_delay
        self.max_resubmissions = max_resubmissions

    # Transaction bookkeeping

    def open_transaction(self, registration_id: str, stage: str = "BIOMETRIC_DEDUPE") -> str:
        """Record packet arrival; returns the new transaction id."""
        transaction_id = str(uuid.uuid4())
        with session_scope(self._session_factory) as session:
            session.add(RegistrationTransaction(
                transaction_id=transaction_id,
                registration_id=registration_id,
                stage=stage,
                status=TransactionStatus.RECEIVED,
            ))
            if session.get(IndividualDedupeEntry, registration_id) is None:
                session.add(IndividualDedupeEntry(registration_id=registration_id, is_active=True))
        logger.info("Registration transaction opened", transaction_id=transaction_id,
                    registration_id=registration_id)
        return transaction_id

    def get_transaction(self, transaction_id: str) -> RegistrationTransaction:
        with session_scope(self._session_factory) as session:
            txn = session.get(RegistrationTransaction, transaction_id)
        if txn is None:
            raise DedupError(ErrorKind.RECORD_NOT_FOUND, "No registration transaction",
                             transaction_id=transaction_id)
        return txn

    def _set_status(
        self,
        session: Session,
        transaction_id: str,
        from_status: TransactionStatus,
        to_status: TransactionStatus,
        comment: Optional[str] = None,
    ) -> bool:
        if to_status not in ALLOWED_TRANSITIONS.get(from_status, frozenset()):
            raise DedupError(
                ErrorKind.INVALID_STATE_TRANSITION,
                "Transition not allowed",
                transaction_id=transaction_id,
                current_status=from_status.value,
                target_status=to_status.value,
            )
        return session.execute(
            update(RegistrationTransaction)
            .where(
                RegistrationTransaction.transaction_id == transaction_id,
                RegistrationTransaction.status == from_status,
            )
            .values(status=to_status, status_comment=comment)
            .execution_options(synchronize_session=False)
        ).rowcount == 1

    def fail_transaction(self, transaction_id: str, reason: str) -> bool:
        """
        Mark a transaction FAILED and surface it to operators.

        Returns:
            False when the transaction was already terminal
        """
        txn = self.get_transaction(transaction_id)
        if txn.status in TERMINAL_STATUSES:
            logger.warning("Transaction already terminal, not failing", transaction_id=transaction_id,
                           status=txn.status.value)
            return False
        with session_scope(self._session_factory) as session:
            failed = self._set_status(session, transaction_id, txn.status, TransactionStatus.FAILED, reason)
        if failed:
            logger.record_decision(TransactionStatus.FAILED.value)
            self.queue.close_tasks_for_transaction(transaction_id)
            logger.critical("Transaction FAILED, operator action required",
                            transaction_id=transaction_id, registration_id=txn.registration_id, reason=reason)
        return failed

    # Request submission

    def start_dedup(self, transaction_id: str) -> str:
        """
        Submit INSERT then IDENTIFY for every reference of the registration.

        Safe to call again after a transient failure: active requests and the
        batch id are reused.

        Returns:
            Batch id shared by the transaction's requests

        Raises:
            DedupError(NO_BIOMETRIC_CAPTURED): Registration has no references
            DedupError(DISPATCH_FAILURE / STORAGE_UNAVAILABLE): Transient
        """
        txn = self.get_transaction(transaction_id)
        if txn.status not in (TransactionStatus.RECEIVED, TransactionStatus.IN_PROGRESS):
            raise DedupError(
                ErrorKind.INVALID_STATE_TRANSITION,
                "Dedup already past request submission",
                transaction_id=transaction_id,
                current_status=txn.status.value,
            )

        bio_ref_ids = sorted(self.references.get_references_by_registration_id(txn.registration_id))
        if not bio_ref_ids:
            raise DedupError(ErrorKind.NO_BIOMETRIC_CAPTURED, "Registration has no biometric references",
                             transaction_id=transaction_id, registration_id=txn.registration_id)

        if txn.status == TransactionStatus.RECEIVED:
            with session_scope(self._session_factory) as session:
                self._set_status(session, transaction_id, TransactionStatus.RECEIVED, TransactionStatus.IN_PROGRESS)

        existing = [r for r in self.tracker.get_requests_by_transaction(transaction_id)
                    if r.status != RequestStatus.FAILED]
        batch_id = existing[0].batch_id if existing else str(uuid.uuid4())

        for bio_ref_id in bio_ref_ids:
            for request_type in (RequestType.INSERT, RequestType.IDENTIFY):
                self.tracker.submit_request(bio_ref_id, transaction_id, batch_id, request_type)

        logger.info("Dedup requests submitted", transaction_id=transaction_id, batch_id=batch_id,
                    references=len(bio_ref_ids))
        return batch_id

    # Response arrival

    def process_response(
        self, request_id: str, candidates: Sequence[Tuple[str, float]]
    ) -> Optional[DecisionResult]:
        """
        Handle one inbound ABIS response.

        Returns:
            The decision when this response completed its batch, else None
        """
        self.correlator.ingest_response(request_id, candidates)
        request = self.tracker.get_request(request_id)
        if request.status == RequestStatus.PROCESSED:
            logger.debug("Response redelivered for processed request", request_id=request_id)
            return None
        try:
            self.tracker.mark_processed(request_id)
        except DedupError as e:
            # A concurrent delivery of the same response got there first
            if e.kind == ErrorKind.INVALID_STATE_TRANSITION and \
                    e.context.get("current_status") == RequestStatus.PROCESSED.value:
                return None
            raise
        return self.on_batch_processed(request.batch_id)

    def process_payload(self, payload: Dict[str, Any]) -> Optional[DecisionResult]:
        """Validate an inbound ABIS message and handle it like process_response."""
        parsed = parse_abis_response(payload)
        request_id = self.correlator.resolve_request_id(
            parsed.request_id, parsed.batch_id, parsed.request_type, parsed.bio_ref_id
        )
        return self.process_response(request_id, parsed.candidates)

    def on_batch_processed(self, batch_id: str) -> Optional[DecisionResult]:
        if not self.tracker.is_batch_complete(batch_id):
            return None
        requests = self.tracker.get_requests_by_batch(batch_id)
        return self.decide(requests[0].transaction_id)

    # Decision

    def decide(self, transaction_id: str) -> DecisionResult:
        txn = self.get_transaction(transaction_id)
        if txn.status == TransactionStatus.RECEIVED:
            raise DedupError(ErrorKind.INVALID_STATE_TRANSITION, "Dedup has not started",
                             transaction_id=transaction_id, current_status=txn.status.value)
        if txn.status != TransactionStatus.IN_PROGRESS:
            logger.info("Decision already taken", transaction_id=transaction_id, status=txn.status.value)
            return self._result_for(txn)

        # ABIS may report the registrant's own freshly inserted sample
        own_refs = self.references.get_references_by_registration_id(txn.registration_id)
        candidates = [c for c in self.correlator.aggregate_candidates_for_transaction(transaction_id)
                      if c.matched_ref_id not in own_refs]
        decision = self.correlator.evaluate(candidates, self.policy)

        matched = None
        if decision == DedupDecision.UNIQUE:
            with session_scope(self._session_factory) as session:
                recorded = self._set_status(session, transaction_id, TransactionStatus.IN_PROGRESS,
                                            TransactionStatus.COMPLETED, "no biometric match")
            status = TransactionStatus.COMPLETED
        elif decision == DedupDecision.DUPLICATE:
            matched = candidates[0].matched_ref_id
            recorded = self._record_duplicate(txn, matched, TransactionStatus.IN_PROGRESS)
            status = TransactionStatus.DUPLICATE_FOUND
        else:
            for candidate in candidates:
                self.queue.enqueue(txn.registration_id, candidate.matched_ref_id, transaction_id, MatchType.BIO)
            with session_scope(self._session_factory) as session:
                recorded = self._set_status(session, transaction_id, TransactionStatus.IN_PROGRESS,
                                            TransactionStatus.AWAITING_MANUAL_REVIEW, "inconclusive biometric match")
            status = TransactionStatus.AWAITING_MANUAL_REVIEW

        if not recorded:
            logger.info("Decision recorded by another worker", transaction_id=transaction_id)
            return self._result_for(self.get_transaction(transaction_id))

        logger.record_decision(decision.value)
        logger.info("Dedup decision", transaction_id=transaction_id, decision=decision.value,
                    candidates=len(candidates), matched_ref_id=matched)
        return DecisionResult(transaction_id, decision, status, matched, candidates)

    def _record_duplicate(
        self, txn: RegistrationTransaction, matched_ref_id: str, from_status: TransactionStatus
    ) -> bool:
        """Record the winning match and deactivate the registration, in one transaction."""
        matched_registrations = sorted(self.references.get_registration_ids_by_references([matched_ref_id]))
        matched_registration_id = matched_registrations[0] if matched_registrations else None

        with session_scope(self._session_factory) as session:
            if not self._set_status(session, txn.transaction_id, from_status,
                                    TransactionStatus.DUPLICATE_FOUND, f"duplicate of {matched_ref_id}"):
                return False
            winner_uin = None
            if matched_registration_id is not None:
                winner = session.get(IndividualDedupeEntry, matched_registration_id)
                winner_uin = winner.uin if winner is not None else None

            session.execute(
                update(DedupeListEntry)
                .where(DedupeListEntry.transaction_id == txn.transaction_id, DedupeListEntry.is_active.is_(True))
                .values(is_active=False)
                .execution_options(synchronize_session=False)
            )
            session.add(DedupeListEntry(
                transaction_id=txn.transaction_id,
                registration_id=txn.registration_id,
                dedupe_type=DedupeType.BIOMETRIC,
                matched_ref_id=matched_ref_id,
                matched_registration_id=matched_registration_id,
                is_active=True,
            ))
            individual = session.get(IndividualDedupeEntry, txn.registration_id)
            if individual is None:
                individual = IndividualDedupeEntry(registration_id=txn.registration_id)
                session.add(individual)
            individual.is_active = False
            if winner_uin is not None:
                individual.uin = winner_uin

        self.queue.close_tasks_for_transaction(txn.transaction_id)
        logger.info("Duplicate recorded", transaction_id=txn.transaction_id,
                    registration_id=txn.registration_id, matched_ref_id=matched_ref_id,
                    matched_registration_id=matched_registration_id)
        return True

    def _result_for(self, txn: RegistrationTransaction) -> DecisionResult:
        decision = {
            TransactionStatus.COMPLETED: DedupDecision.UNIQUE,
            TransactionStatus.DUPLICATE_FOUND: DedupDecision.DUPLICATE,
        }.get(txn.status, DedupDecision.INCONCLUSIVE)
        matched = None
        if txn.status == TransactionStatus.DUPLICATE_FOUND:
            entries = [e for e in self.get_dedupe_entries(txn.transaction_id) if e.is_active]
            matched = entries[-1].matched_ref_id if entries else None
        return DecisionResult(txn.transaction_id, decision, txn.status, matched)

    # Manual verification outcome

    def resolve_manual_verification(
        self,
        registration_id: str,
        matched_ref_id: str,
        verifier_id: str,
        outcome: ManualOutcome,
        reason_code: Optional[str] = None,
    ) -> Optional[DecisionResult]:
        """
        Record a verifier's outcome and finalize the transaction when it can be.

        A confirmed duplicate is final at once. A unique confirmation is final
        only after every task of the transaction is completed.

        Returns:
            The terminal decision, or None while other tasks are still open
        """
        task = self.queue.resolve(registration_id, matched_ref_id, verifier_id, outcome, reason_code)
        txn = self.get_transaction(task.transaction_id)
        if txn.status != TransactionStatus.AWAITING_MANUAL_REVIEW:
            logger.info("Transaction no longer awaiting review", transaction_id=txn.transaction_id,
                        status=txn.status.value)
            return self._result_for(txn)

        if task.outcome == ManualOutcome.DUPLICATE_CONFIRMED:
            if not self._record_duplicate(txn, matched_ref_id, TransactionStatus.AWAITING_MANUAL_REVIEW):
                return self._result_for(self.get_transaction(txn.transaction_id))
            logger.record_decision(DedupDecision.DUPLICATE.value)
            return DecisionResult(txn.transaction_id, DedupDecision.DUPLICATE,
                                  TransactionStatus.DUPLICATE_FOUND, matched_ref_id)

        tasks = self.queue.get_tasks_for_transaction(txn.transaction_id)
        if any(t.status != TaskStatus.COMPLETED for t in tasks):
            return None
        with session_scope(self._session_factory) as session:
            done = self._set_status(session, txn.transaction_id, TransactionStatus.AWAITING_MANUAL_REVIEW,
                                    TransactionStatus.COMPLETED, "unique confirmed by manual verification")
        if not done:
            return self._result_for(self.get_transaction(txn.transaction_id))
        logger.record_decision(DedupDecision.UNIQUE.value)
        return DecisionResult(txn.transaction_id, DedupDecision.UNIQUE, TransactionStatus.COMPLETED)

    # Timeout and retry handling

    def handle_expired_request(self, request_id: str) -> Optional[str]:
        """
        React to a request the timeout sweep moved to FAILED.

        Returns:
            Id of the replacement request, or None when the transaction was
            failed instead
        """
        request = self.tracker.get_request(request_id)
        txn = self.get_transaction(request.transaction_id)
        if txn.status in TERMINAL_STATUSES:
            return None

        attempts = self.tracker.count_failed_attempts(request.bio_ref_id, request.transaction_id,
                                                      request.request_type)
        if attempts > self.max_resubmissions:
            self.fail_transaction(txn.transaction_id,
                                  f"{request.request_type.value} for {request.bio_ref_id} expired {attempts} times")
            return None

        new_id = self.tracker.submit_request(request.bio_ref_id, request.transaction_id,
                                             request.batch_id, request.request_type)
        logger.info("Expired request resubmitted", request_id=request_id, replacement=new_id, attempt=attempts)
        return new_id

    def run_with_retry(self, transaction_id: str, operation: Callable, *args, **kwargs):
        """
        Run a transaction step, retrying transient failures with backoff.

        On exhaustion the transaction is marked FAILED and RetryError raised.
        Structural errors propagate at once.
        """
        def on_retry(attempt, exc, delay):
            logger.warning("Transient failure, retrying", transaction_id=transaction_id,
                           attempt=attempt, delay=delay, error=str(exc))

        retrying = exponential_backoff(
            max_retries=self.max_retries,
            base_delay=self.retry_base_delay,
            exceptions=(DedupError,),
            retry_if=is_transient_error,
            on_retry=on_retry,
        )(operation)
        try:
            return retrying(*args, **kwargs)
        except RetryError as e:
            cause = e.__cause__
            if isinstance(cause, DedupError):
                logger.record_error(cause.kind.value)
            self.fail_transaction(transaction_id, f"retries exhausted: {cause}")
            raise
        except DedupError as e:
            logger.record_error(e.kind.value)
            logger.error("Structural dedup error", transaction_id=transaction_id, error=e.to_dict())
            raise

    # Dedupe list and identity records

    def get_dedupe_entries(self, transaction_id: str) -> List[DedupeListEntry]:
        with session_scope(self._session_factory) as session:
            return list(session.execute(
                select(DedupeListEntry)
                .where(DedupeListEntry.transaction_id == transaction_id)
                .order_by(DedupeListEntry.id)
            ).scalars())

    def assign_uin(self, registration_id: str, uin: str) -> None:
        with session_scope(self._session_factory) as session:
            individual = session.get(IndividualDedupeEntry, registration_id)
            if individual is None:
                raise DedupError(ErrorKind.RECORD_NOT_FOUND, "No identity record",
                                 registration_id=registration_id)
            individual.uin = uin

    def get_uin(self, registration_id: str) -> Optional[str]:
        with session_scope(self._session_factory) as session:
            individual = session.get(IndividualDedupeEntry, registration_id)
        if individual is None:
            raise DedupError(ErrorKind.RECORD_NOT_FOUND, "No identity record", registration_id=registration_id)
        return individual.uin

    def get_registration_ids_by_uin(self, uin: str) -> List[str]:
        with session_scope(self._session_factory) as session:
            return list(session.execute(
                select(IndividualDedupeEntry.registration_id)
                .where(IndividualDedupeEntry.uin == uin)
                .order_by(IndividualDedupeEntry.registration_id)
            ).scalars())

    def is_active(self, registration_id: str) -> bool:
        with session_scope(self._session_factory) as session:
            individual = session.get(IndividualDedupeEntry, registration_id)
        if individual is None:
            raise DedupError(ErrorKind.RECORD_NOT_FOUND, "No identity record", registration_id=registration_id)
        return individual.is_active
