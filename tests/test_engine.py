"""
Tests for the dedup decision engine, end to end over a real database.
"""

from concurrent.futures import ThreadPoolExecutor

import pytest

from abisdedup.abis.correlator import DedupDecision
from abisdedup.abis.dispatcher import InMemoryDispatcher
from abisdedup.abis.tracker import AbisRequestTracker
from abisdedup.database import (
    DedupeType,
    ManualOutcome,
    RequestStatus,
    RequestType,
    TaskStatus,
    TransactionStatus,
)
from abisdedup.engine import DedupDecisionEngine
from abisdedup.errors import DedupError, ErrorKind
from abisdedup.logger import get_logger
from abisdedup.retry import CircuitBreaker, RetryError


class FlakyDispatcher(InMemoryDispatcher):
    """Rejects the first ``failures`` payloads."""

    def __init__(self, failures):
        super().__init__()
        self.failures = failures

    def dispatch(self, payload):
        if self.failures > 0:
            self.failures -= 1
            raise ConnectionError("queue unavailable")
        super().dispatch(payload)


@pytest.fixture
def existing_identity(references, engine):
    """An enrolled registration whose reference ABIS can match against."""
    ref = references.create_reference("reg-old")
    engine.open_transaction("reg-old")
    engine.assign_uin("reg-old", "UIN-1001")
    return ref


@pytest.fixture
def started(references, engine):
    """A new registration with one reference and its requests sent."""
    own_ref = references.create_reference("reg-new")
    transaction_id = engine.open_transaction("reg-new")
    batch_id = engine.start_dedup(transaction_id)
    return transaction_id, batch_id, own_ref


def _request_id(tracker, transaction_id, request_type):
    [request] = [r for r in tracker.get_requests_by_transaction(transaction_id, request_type)
                 if r.status != RequestStatus.FAILED]
    return request.request_id


def _respond(engine, tracker, transaction_id, identify_candidates, insert_candidates=()):
    engine.process_response(_request_id(tracker, transaction_id, RequestType.INSERT), list(insert_candidates))
    return engine.process_response(_request_id(tracker, transaction_id, RequestType.IDENTIFY),
                                   list(identify_candidates))


class TestStartDedup:
    """Test request submission for a packet."""

    def test_insert_then_identify_per_reference(self, references, engine, dispatcher):
        refs = {references.create_reference("reg-1"), references.create_reference("reg-1")}
        transaction_id = engine.open_transaction("reg-1")

        batch_id = engine.start_dedup(transaction_id)

        assert engine.get_transaction(transaction_id).status == TransactionStatus.IN_PROGRESS
        assert len(dispatcher.sent) == 4
        assert {p["batchId"] for p in dispatcher.sent} == {batch_id}
        for ref in refs:
            types = [p["requestType"] for p in dispatcher.sent if p["bioRefId"] == ref]
            assert types == ["INSERT", "IDENTIFY"]

    def test_no_references(self, engine):
        transaction_id = engine.open_transaction("reg-empty")

        with pytest.raises(DedupError) as exc_info:
            engine.start_dedup(transaction_id)

        assert exc_info.value.kind == ErrorKind.NO_BIOMETRIC_CAPTURED
        assert engine.get_transaction(transaction_id).status == TransactionStatus.RECEIVED

    def test_restart_reuses_batch(self, engine, dispatcher, started):
        transaction_id, batch_id, _ = started

        assert engine.start_dedup(transaction_id) == batch_id
        assert len(dispatcher.sent) == 2

    def test_unknown_transaction(self, engine):
        with pytest.raises(DedupError) as exc_info:
            engine.start_dedup("no-such-txn")
        assert exc_info.value.kind == ErrorKind.RECORD_NOT_FOUND


class TestDecision:
    """Test the automatic decision once a batch is complete."""

    def test_no_candidates_completes(self, engine, tracker, started):
        transaction_id, _, _ = started

        result = _respond(engine, tracker, transaction_id, [])

        assert result.decision == DedupDecision.UNIQUE
        assert engine.get_transaction(transaction_id).status == TransactionStatus.COMPLETED
        assert engine.get_dedupe_entries(transaction_id) == []
        assert engine.is_active("reg-new")

    def test_clear_match_is_duplicate(self, engine, tracker, existing_identity, started):
        transaction_id, _, _ = started

        result = _respond(engine, tracker, transaction_id, [(existing_identity, 0.97), ("ref-other", 0.40)])

        assert result.decision == DedupDecision.DUPLICATE
        assert result.matched_ref_id == existing_identity
        assert engine.get_transaction(transaction_id).status == TransactionStatus.DUPLICATE_FOUND
        [entry] = engine.get_dedupe_entries(transaction_id)
        assert entry.dedupe_type == DedupeType.BIOMETRIC
        assert entry.matched_ref_id == existing_identity
        assert entry.matched_registration_id == "reg-old"
        assert not engine.is_active("reg-new")
        assert engine.get_uin("reg-new") == "UIN-1001"

    def test_close_scores_go_to_manual_review(self, engine, tracker, queue, started):
        transaction_id, _, _ = started

        result = _respond(engine, tracker, transaction_id, [("refA", 0.92), ("refB", 0.89)])

        assert result.decision == DedupDecision.INCONCLUSIVE
        assert engine.get_transaction(transaction_id).status == TransactionStatus.AWAITING_MANUAL_REVIEW
        tasks = queue.get_tasks_for_transaction(transaction_id)
        assert {t.matched_ref_id for t in tasks} == {"refA", "refB"}
        assert all(t.status == TaskStatus.PENDING for t in tasks)
        assert engine.get_dedupe_entries(transaction_id) == []

    def test_own_reference_is_not_a_duplicate(self, engine, tracker, started):
        transaction_id, _, own_ref = started

        result = _respond(engine, tracker, transaction_id, [(own_ref, 1.0)], insert_candidates=[(own_ref, 1.0)])

        assert result.decision == DedupDecision.UNIQUE
        assert engine.get_transaction(transaction_id).status == TransactionStatus.COMPLETED

    def test_waits_for_whole_batch(self, engine, tracker, started):
        transaction_id, _, _ = started

        first = engine.process_response(_request_id(tracker, transaction_id, RequestType.IDENTIFY),
                                        [("refA", 0.97)])

        assert first is None
        assert engine.get_transaction(transaction_id).status == TransactionStatus.IN_PROGRESS

    def test_redelivered_response_is_noop(self, engine, tracker, started):
        transaction_id, _, _ = started
        _respond(engine, tracker, transaction_id, [])
        identify_id = _request_id(tracker, transaction_id, RequestType.IDENTIFY)

        assert engine.process_response(identify_id, [("refA", 0.99)]) is None
        assert engine.get_transaction(transaction_id).status == TransactionStatus.COMPLETED
        assert get_logger().metrics["duplicate_responses"] == 1

    def test_concurrent_deliveries_decide_once(self, engine, tracker, existing_identity, started):
        transaction_id, _, _ = started
        engine.process_response(_request_id(tracker, transaction_id, RequestType.INSERT), [])
        identify_id = _request_id(tracker, transaction_id, RequestType.IDENTIFY)

        with ThreadPoolExecutor(max_workers=4) as pool:
            list(pool.map(lambda _: engine.process_response(identify_id, [(existing_identity, 0.97)]), range(8)))

        assert engine.get_transaction(transaction_id).status == TransactionStatus.DUPLICATE_FOUND
        assert len(engine.get_dedupe_entries(transaction_id)) == 1

    def test_decide_again_returns_recorded_outcome(self, engine, tracker, existing_identity, started):
        transaction_id, _, _ = started
        _respond(engine, tracker, transaction_id, [(existing_identity, 0.97)])

        again = engine.decide(transaction_id)

        assert again.decision == DedupDecision.DUPLICATE
        assert again.matched_ref_id == existing_identity
        assert len(engine.get_dedupe_entries(transaction_id)) == 1

    def test_batch_addressed_payload(self, engine, tracker, started):
        transaction_id, batch_id, own_ref = started
        engine.process_response(_request_id(tracker, transaction_id, RequestType.INSERT), [])

        result = engine.process_payload({"batchId": batch_id, "requestType": "IDENTIFY", "candidates": []})

        assert result.status == TransactionStatus.COMPLETED


class TestManualVerificationOutcome:
    """Test finalizing after human review."""

    @pytest.fixture
    def awaiting(self, engine, tracker, existing_identity, started):
        transaction_id, _, _ = started
        _respond(engine, tracker, transaction_id, [(existing_identity, 0.92), ("refB", 0.89)])
        return transaction_id, existing_identity

    def test_duplicate_confirmed_finalizes(self, engine, queue, awaiting):
        transaction_id, matched = awaiting
        task = queue.assign_next("v1")
        assert task.matched_ref_id == matched

        result = engine.resolve_manual_verification("reg-new", matched, "v1", ManualOutcome.DUPLICATE_CONFIRMED)

        assert result.decision == DedupDecision.DUPLICATE
        assert engine.get_transaction(transaction_id).status == TransactionStatus.DUPLICATE_FOUND
        [entry] = engine.get_dedupe_entries(transaction_id)
        assert entry.matched_registration_id == "reg-old"
        assert not engine.is_active("reg-new")

    def test_unique_needs_every_task(self, engine, queue, awaiting):
        transaction_id, _ = awaiting
        first = queue.assign_next("v1")
        second = queue.assign_next("v2")

        assert engine.resolve_manual_verification(
            "reg-new", first.matched_ref_id, "v1", ManualOutcome.UNIQUE_CONFIRMED) is None
        assert engine.get_transaction(transaction_id).status == TransactionStatus.AWAITING_MANUAL_REVIEW

        result = engine.resolve_manual_verification(
            "reg-new", second.matched_ref_id, "v2", ManualOutcome.UNIQUE_CONFIRMED)

        assert result.decision == DedupDecision.UNIQUE
        assert engine.get_transaction(transaction_id).status == TransactionStatus.COMPLETED
        assert engine.is_active("reg-new")

    def test_duplicate_confirmed_closes_sibling_task(self, engine, queue, awaiting):
        transaction_id, _ = awaiting
        first = queue.assign_next("v1")

        engine.resolve_manual_verification("reg-new", first.matched_ref_id, "v1",
                                           ManualOutcome.DUPLICATE_CONFIRMED)

        assert engine.get_transaction(transaction_id).status == TransactionStatus.DUPLICATE_FOUND
        assert queue.get_pending_count() == 0
        assert queue.assign_next("v2") is None
        assert all(t.status == TaskStatus.COMPLETED for t in queue.get_tasks_for_transaction(transaction_id))

    def test_failing_transaction_closes_its_tasks(self, engine, queue, awaiting):
        transaction_id, _ = awaiting
        queue.assign_next("v1")

        assert engine.fail_transaction(transaction_id, "operator abort")

        assert queue.get_pending_count() == 0
        assert queue.get_assigned("v1") == []

    def test_reopened_registration_reaches_decision(self, engine, tracker, queue, awaiting):
        """A registration failed during review gets a fresh review under its next transaction."""
        first_txn, matched = awaiting
        engine.fail_transaction(first_txn, "operator abort")

        second_txn = engine.open_transaction("reg-new")
        engine.start_dedup(second_txn)
        result = _respond(engine, tracker, second_txn, [(matched, 0.92), ("refB", 0.89)])
        assert result.status == TransactionStatus.AWAITING_MANUAL_REVIEW
        assert {t.matched_ref_id for t in queue.get_tasks_for_transaction(second_txn)} == {matched, "refB"}

        outcomes = []
        task = queue.assign_next("v1")
        while task is not None:
            outcomes.append(engine.resolve_manual_verification(
                "reg-new", task.matched_ref_id, "v1", ManualOutcome.UNIQUE_CONFIRMED))
            task = queue.assign_next("v1")

        assert outcomes[0] is None
        assert outcomes[-1].decision == DedupDecision.UNIQUE
        assert engine.get_transaction(second_txn).status == TransactionStatus.COMPLETED
        assert engine.get_transaction(first_txn).status == TransactionStatus.FAILED
        assert queue.get_pending_count() == 0

    def test_wrong_verifier(self, engine, queue, awaiting):
        _, matched = awaiting
        queue.assign_next("v1")

        with pytest.raises(DedupError) as exc_info:
            engine.resolve_manual_verification("reg-new", matched, "v9", ManualOutcome.UNIQUE_CONFIRMED)
        assert exc_info.value.kind == ErrorKind.NOT_ASSIGNED_TO_VERIFIER


class TestFailureHandling:
    """Test expiry, retries and failing a transaction."""

    def test_expired_request_is_resubmitted_then_fails(self, engine, tracker, dispatcher, started):
        transaction_id, batch_id, _ = started
        identify_id = _request_id(tracker, transaction_id, RequestType.IDENTIFY)
        tracker.mark_failed(identify_id, "expired")

        replacement = engine.handle_expired_request(identify_id)

        assert replacement != identify_id
        assert tracker.get_request(replacement).batch_id == batch_id
        assert tracker.get_request(replacement).status == RequestStatus.SENT

        tracker.mark_failed(replacement, "expired")
        assert engine.handle_expired_request(replacement) is None
        assert engine.get_transaction(transaction_id).status == TransactionStatus.FAILED

    def test_resubmitted_request_completes_batch(self, engine, tracker, started):
        transaction_id, _, _ = started
        insert_id = _request_id(tracker, transaction_id, RequestType.INSERT)
        tracker.mark_failed(insert_id, "expired")
        engine.handle_expired_request(insert_id)

        result = _respond(engine, tracker, transaction_id, [])

        assert result.status == TransactionStatus.COMPLETED

    def test_retry_recovers_from_transient_dispatch_failure(
        self, session_factory, references, correlator, queue
    ):
        tracker = AbisRequestTracker(session_factory, FlakyDispatcher(failures=1))
        engine = DedupDecisionEngine(session_factory, references, tracker, correlator, queue,
                                     max_retries=2, retry_base_delay=0.0)
        references.create_reference("reg-1")
        transaction_id = engine.open_transaction("reg-1")

        batch_id = engine.run_with_retry(transaction_id, engine.start_dedup, transaction_id)

        assert batch_id
        assert engine.get_transaction(transaction_id).status == TransactionStatus.IN_PROGRESS
        assert all(r.status == RequestStatus.SENT for r in tracker.get_requests_by_transaction(transaction_id))

    def test_retry_exhaustion_fails_transaction(self, session_factory, references, correlator, queue):
        dispatcher = InMemoryDispatcher()
        dispatcher.reject_with = ConnectionError("queue unavailable")
        tracker = AbisRequestTracker(session_factory, dispatcher,
                                     circuit_breaker=CircuitBreaker(failure_threshold=100))
        engine = DedupDecisionEngine(session_factory, references, tracker, correlator, queue,
                                     max_retries=2, retry_base_delay=0.0)
        references.create_reference("reg-1")
        transaction_id = engine.open_transaction("reg-1")

        with pytest.raises(RetryError):
            engine.run_with_retry(transaction_id, engine.start_dedup, transaction_id)

        txn = engine.get_transaction(transaction_id)
        assert txn.status == TransactionStatus.FAILED
        assert "retries exhausted" in txn.status_comment
        assert get_logger().metrics["errors_by_kind"]["DISPATCH_FAILURE"] == 1

    def test_structural_error_is_not_retried(self, engine):
        transaction_id = engine.open_transaction("reg-empty")
        calls = []

        def start(txn_id):
            calls.append(txn_id)
            return engine.start_dedup(txn_id)

        with pytest.raises(DedupError) as exc_info:
            engine.run_with_retry(transaction_id, start, transaction_id)

        assert exc_info.value.kind == ErrorKind.NO_BIOMETRIC_CAPTURED
        assert len(calls) == 1
        assert engine.get_transaction(transaction_id).status == TransactionStatus.RECEIVED

    def test_terminal_transaction_is_not_failed(self, engine, tracker, started):
        transaction_id, _, _ = started
        _respond(engine, tracker, transaction_id, [])

        assert engine.fail_transaction(transaction_id, "late failure") is False
        assert engine.get_transaction(transaction_id).status == TransactionStatus.COMPLETED

    def test_late_response_for_expired_request(self, engine, tracker, started):
        transaction_id, _, _ = started
        identify_id = _request_id(tracker, transaction_id, RequestType.IDENTIFY)
        tracker.mark_failed(identify_id, "expired")

        with pytest.raises(DedupError) as exc_info:
            engine.process_response(identify_id, [])
        assert exc_info.value.kind == ErrorKind.INVALID_STATE_TRANSITION


class TestIdentityRecords:
    """Test UIN bookkeeping."""

    def test_uin_lookup(self, engine):
        engine.open_transaction("reg-1")
        engine.open_transaction("reg-2")
        engine.assign_uin("reg-1", "UIN-7")
        engine.assign_uin("reg-2", "UIN-7")

        assert engine.get_uin("reg-1") == "UIN-7"
        assert engine.get_registration_ids_by_uin("UIN-7") == ["reg-1", "reg-2"]
        assert engine.get_registration_ids_by_uin("UIN-unknown") == []

    def test_unknown_registration(self, engine):
        with pytest.raises(DedupError) as exc_info:
            engine.get_uin("reg-missing")
        assert exc_info.value.kind == ErrorKind.RECORD_NOT_FOUND

        with pytest.raises(DedupError):
            engine.assign_uin("reg-missing", "UIN-1")

    def test_reopening_keeps_identity_record(self, engine):
        engine.open_transaction("reg-1")
        engine.assign_uin("reg-1", "UIN-3")
        engine.open_transaction("reg-1")

        assert engine.get_uin("reg-1") == "UIN-3"
