"""
Tests for the ABIS request tracker.
"""

from datetime import datetime, timedelta

import pytest

from abisdedup.abis.tracker import AbisRequestTracker
from abisdedup.database import AbisRequest, RequestStatus, RequestType, session_scope
from abisdedup.errors import DedupError, ErrorKind
from abisdedup.logger import get_logger
from abisdedup.retry import CircuitBreaker


def _submit(tracker, ref="ref-1", txn="txn-1", batch="batch-1", request_type=RequestType.INSERT):
    return tracker.submit_request(ref, txn, batch, request_type)


class TestSubmitRequest:
    """Test request persistence and dispatch."""

    def test_submit_dispatches_and_marks_sent(self, tracker, dispatcher):
        request_id = _submit(tracker)

        request = tracker.get_request(request_id)
        assert request.status == RequestStatus.SENT
        assert request.sent_at is not None
        assert len(dispatcher.sent) == 1

        payload = dispatcher.sent[0]
        assert payload["requestId"] == request_id
        assert payload["bioRefId"] == "ref-1"
        assert payload["batchId"] == "batch-1"
        assert payload["requestType"] == "INSERT"
        assert payload["abisAppCode"] == "ABIS"
        assert payload["referenceURL"].endswith("/ref-1")

    def test_submit_is_idempotent(self, tracker, dispatcher):
        """Resubmitting an active triple returns the same id and dispatches once."""
        first = _submit(tracker)
        second = _submit(tracker)

        assert first == second
        assert len(tracker.get_requests_by_transaction("txn-1")) == 1
        assert len(dispatcher.sent) == 1

    def test_types_are_tracked_separately(self, tracker):
        insert_id = _submit(tracker, request_type=RequestType.INSERT)
        identify_id = _submit(tracker, request_type=RequestType.IDENTIFY)

        assert insert_id != identify_id
        assert len(tracker.get_requests_by_transaction("txn-1", RequestType.IDENTIFY)) == 1

    def test_dispatch_failure_leaves_request_created(self, tracker, dispatcher):
        dispatcher.reject_with = ConnectionError("queue down")

        with pytest.raises(DedupError) as exc_info:
            _submit(tracker)

        assert exc_info.value.kind == ErrorKind.DISPATCH_FAILURE
        assert exc_info.value.retryable
        [request] = tracker.get_requests_by_transaction("txn-1")
        assert request.status == RequestStatus.CREATED
        assert get_logger().metrics["dispatch_failures"] == 1

    def test_resubmission_redispatches_created_request(self, tracker, dispatcher):
        dispatcher.reject_with = ConnectionError("queue down")
        with pytest.raises(DedupError):
            _submit(tracker)

        dispatcher.reject_with = None
        request_id = _submit(tracker)

        assert tracker.get_request(request_id).status == RequestStatus.SENT
        assert len(tracker.get_requests_by_transaction("txn-1")) == 1
        assert len(dispatcher.sent) == 1

    def test_open_circuit_is_dispatch_failure(self, session_factory, dispatcher):
        tracker = AbisRequestTracker(session_factory, dispatcher,
                                     circuit_breaker=CircuitBreaker(failure_threshold=1, recovery_timeout=60))
        dispatcher.reject_with = ConnectionError("queue down")
        with pytest.raises(DedupError):
            _submit(tracker, ref="ref-1")

        dispatcher.reject_with = None
        with pytest.raises(DedupError) as exc_info:
            _submit(tracker, ref="ref-2")

        assert exc_info.value.kind == ErrorKind.DISPATCH_FAILURE
        assert dispatcher.sent == []

    def test_new_request_after_failure(self, tracker):
        first = _submit(tracker)
        tracker.mark_failed(first, "expired")

        second = _submit(tracker)

        assert second != first
        assert tracker.count_failed_attempts("ref-1", "txn-1", RequestType.INSERT) == 1


class TestStatusTransitions:
    """Test guarded status changes."""

    def test_mark_processed_from_sent(self, tracker):
        request_id = _submit(tracker)
        tracker.mark_processed(request_id)
        assert tracker.get_request(request_id).status == RequestStatus.PROCESSED

    def test_mark_processed_twice_fails(self, tracker):
        request_id = _submit(tracker)
        tracker.mark_processed(request_id)

        with pytest.raises(DedupError) as exc_info:
            tracker.mark_processed(request_id)

        assert exc_info.value.kind == ErrorKind.INVALID_STATE_TRANSITION
        assert exc_info.value.context["current_status"] == "PROCESSED"

    def test_mark_processed_requires_sent(self, tracker, dispatcher):
        dispatcher.reject_with = ConnectionError("queue down")
        with pytest.raises(DedupError):
            _submit(tracker)
        [request] = tracker.get_requests_by_transaction("txn-1")

        with pytest.raises(DedupError) as exc_info:
            tracker.mark_processed(request.request_id)

        assert exc_info.value.kind == ErrorKind.INVALID_STATE_TRANSITION

    def test_mark_processed_failed_request(self, tracker):
        request_id = _submit(tracker)
        tracker.mark_failed(request_id)

        with pytest.raises(DedupError) as exc_info:
            tracker.mark_processed(request_id)

        assert exc_info.value.kind == ErrorKind.INVALID_STATE_TRANSITION

    def test_unknown_request(self, tracker):
        with pytest.raises(DedupError) as exc_info:
            tracker.mark_processed("nope")
        assert exc_info.value.kind == ErrorKind.UNKNOWN_REQUEST_ID

        with pytest.raises(DedupError) as exc_info:
            tracker.get_request("nope")
        assert exc_info.value.kind == ErrorKind.UNKNOWN_REQUEST_ID

    def test_failed_is_terminal(self, tracker):
        request_id = _submit(tracker)
        tracker.mark_failed(request_id, "gave up")

        with pytest.raises(DedupError) as exc_info:
            tracker.mark_failed(request_id)

        assert exc_info.value.kind == ErrorKind.INVALID_STATE_TRANSITION
        assert tracker.get_request(request_id).status_comment == "gave up"


class TestExpireStaleRequests:
    """Test timeout expiry."""

    def _backdate(self, session_factory, request_id, sent_at):
        with session_scope(session_factory) as session:
            session.get(AbisRequest, request_id).sent_at = sent_at

    def test_only_old_sent_requests_expire(self, tracker, session_factory):
        now = datetime.now()
        old = _submit(tracker, ref="ref-old")
        fresh = _submit(tracker, ref="ref-fresh")
        processed = _submit(tracker, ref="ref-done")
        self._backdate(session_factory, old, now - timedelta(hours=2))
        self._backdate(session_factory, processed, now - timedelta(hours=2))
        tracker.mark_processed(processed)

        expired = tracker.expire_stale_requests(timedelta(hours=1), now=now)

        assert expired == [old]
        assert tracker.get_request(old).status == RequestStatus.FAILED
        assert tracker.get_request(fresh).status == RequestStatus.SENT
        assert tracker.get_request(processed).status == RequestStatus.PROCESSED
        assert get_logger().metrics["requests_expired"] == 1

    def test_second_sweep_expires_nothing(self, tracker, session_factory):
        now = datetime.now()
        old = _submit(tracker)
        self._backdate(session_factory, old, now - timedelta(hours=2))

        assert tracker.expire_stale_requests(timedelta(hours=1), now=now) == [old]
        assert tracker.expire_stale_requests(timedelta(hours=1), now=now) == []


class TestLookups:
    """Test batch and transaction queries."""

    def test_batch_and_transaction_ids(self, tracker):
        request_id = _submit(tracker)
        assert tracker.get_batch_id(request_id) == "batch-1"
        assert tracker.get_transaction_id(request_id) == "txn-1"

    def test_batch_complete_needs_every_pair_processed(self, tracker):
        insert_id = _submit(tracker, request_type=RequestType.INSERT)
        identify_id = _submit(tracker, request_type=RequestType.IDENTIFY)
        assert not tracker.is_batch_complete("batch-1")

        tracker.mark_processed(insert_id)
        assert not tracker.is_batch_complete("batch-1")

        tracker.mark_processed(identify_id)
        assert tracker.is_batch_complete("batch-1")
        assert tracker.get_batch_statuses("batch-1") == [RequestStatus.PROCESSED, RequestStatus.PROCESSED]

    def test_failed_pair_keeps_batch_open(self, tracker):
        insert_id = _submit(tracker, request_type=RequestType.INSERT)
        identify_id = _submit(tracker, request_type=RequestType.IDENTIFY)
        tracker.mark_processed(identify_id)
        tracker.mark_failed(insert_id, "expired")

        assert not tracker.is_batch_complete("batch-1")

        replacement = _submit(tracker, request_type=RequestType.INSERT)
        tracker.mark_processed(replacement)
        assert tracker.is_batch_complete("batch-1")

    def test_unknown_batch_is_not_complete(self, tracker):
        assert not tracker.is_batch_complete("no-such-batch")

    def test_insert_requests_by_reference(self, tracker):
        _submit(tracker, txn="txn-1", batch="b1")
        _submit(tracker, txn="txn-2", batch="b2")
        _submit(tracker, txn="txn-2", batch="b2", request_type=RequestType.IDENTIFY)

        requests = tracker.get_insert_requests_by_reference("ref-1")
        assert {r.transaction_id for r in requests} == {"txn-1", "txn-2"}
