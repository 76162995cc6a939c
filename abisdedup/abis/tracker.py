"""
ABIS Request Tracker.

Responsibilities:
- Persist insert/identify requests and hand them to the outbound channel.
- Own every AbisRequest status transition:
  CREATED -> SENT -> PROCESSED, CREATED/SENT -> FAILED.
- Expire requests that stay SENT past the timeout.

Non-Responsibilities:
- No response handling.
- No dedup decisions.

Invariant:
For a (reference, transaction, type) triple there is at most one request
that is not FAILED. Resubmission returns it instead of creating another.
"""

import uuid
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from ..database import AbisRequest, RequestStatus, RequestType, session_scope
from ..errors import DedupError, ErrorKind
from ..logger import get_logger
from ..retry import CircuitBreaker
from .dispatcher import AbisDispatcher

logger = get_logger()


class AbisRequestTracker:
    def __init__(
        self,
        session_factory: sessionmaker,
        dispatcher: AbisDispatcher,
        abis_app_code: str = "ABIS",
        reference_url_template: str = "http://datashare/biometrics/{bio_ref_id}",
        circuit_breaker: Optional[CircuitBreaker] = None,
    ):
        self._session_factory = session_factory
        self._dispatcher = dispatcher
        self.abis_app_code = abis_app_code
        self.reference_url_template = reference_url_template
        self._breaker = circuit_breaker or CircuitBreaker()

    # Submission

    def submit_request(
        self,
        bio_ref_id: str,
        transaction_id: str,
        batch_id: str,
        request_type: RequestType,
    ) -> str:
        """
        Persist a request and dispatch it to ABIS.

        Args:
            bio_ref_id: Biometric reference the request is about
            transaction_id: Owning registration transaction
            batch_id: Correlation batch shared by the transaction's requests
            request_type: INSERT or IDENTIFY

        Returns:
            Request id (the existing one when the triple is already active)

        Raises:
            DedupError(DISPATCH_FAILURE): Channel rejected the payload; the
                request stays CREATED and a resubmission re-dispatches it
        """
        request_type = RequestType(request_type)
        try:
            with session_scope(self._session_factory) as session:
                request = self._find_active(session, bio_ref_id, transaction_id, request_type)
                created = request is None
                if created:
                    request = AbisRequest(
                        request_id=str(uuid.uuid4()),
                        bio_ref_id=bio_ref_id,
                        batch_id=batch_id,
                        transaction_id=transaction_id,
                        request_type=request_type,
                        status=RequestStatus.CREATED,
                        abis_app_code=self.abis_app_code,
                    )
                    session.add(request)
        except IntegrityError:
            # Lost a race with an identical submission; theirs is the active one
            with session_scope(self._session_factory) as session:
                request = self._find_active(session, bio_ref_id, transaction_id, request_type)
            created = False
            if request is None:
                raise

        if not created and request.status != RequestStatus.CREATED:
            logger.debug(
                "Request already active, returning existing id",
                request_id=request.request_id,
                status=request.status.value,
            )
            return request.request_id

        if not created:
            logger.info("Re-dispatching request left in CREATED", request_id=request.request_id)

        self._dispatch(self._build_payload(request))
        if not self._transition(request.request_id, (RequestStatus.CREATED,), RequestStatus.SENT,
                                sent_at=datetime.now()):
            logger.warning("Request changed state during dispatch", request_id=request.request_id)
        logger.record_request_submitted(request_type.value)
        logger.info(
            "ABIS request sent",
            request_id=request.request_id,
            request_type=request_type.value,
            batch_id=request.batch_id,
            transaction_id=transaction_id,
        )
        return request.request_id

    def _build_payload(self, request: AbisRequest) -> Dict[str, Any]:
        return {
            "requestId": request.request_id,
            "bioRefId": request.bio_ref_id,
            "batchId": request.batch_id,
            "requestType": request.request_type.value,
            "referenceURL": self.reference_url_template.format(bio_ref_id=request.bio_ref_id),
            "abisAppCode": request.abis_app_code,
            "requestTime": datetime.now().isoformat(),
        }

    def _dispatch(self, payload: Dict[str, Any]) -> None:
        try:
            self._breaker.call(self._dispatcher.dispatch, payload)
        except Exception as e:
            logger.record_dispatch_failure()
            logger.warning("ABIS dispatch failed", request_id=payload["requestId"], error=str(e))
            raise DedupError(
                ErrorKind.DISPATCH_FAILURE,
                "Outbound channel rejected the request",
                request_id=payload["requestId"],
                batch_id=payload["batchId"],
                error=str(e),
            ) from e

    # Status transitions

    def _transition(
        self,
        request_id: str,
        from_statuses: Sequence[RequestStatus],
        to_status: RequestStatus,
        session: Optional[Session] = None,
        **values: Any,
    ) -> bool:
        """Guarded update; True when this call performed the transition."""
        stmt = (
            update(AbisRequest)
            .where(AbisRequest.request_id == request_id, AbisRequest.status.in_(list(from_statuses)))
            .values(status=to_status, updated_at=datetime.now(), **values)
            .execution_options(synchronize_session=False)
        )
        if session is not None:
            return session.execute(stmt).rowcount == 1
        with session_scope(self._session_factory) as own_session:
            return own_session.execute(stmt).rowcount == 1

    def _transition_or_raise(
        self,
        request_id: str,
        from_statuses: Sequence[RequestStatus],
        to_status: RequestStatus,
        **values: Any,
    ) -> None:
        with session_scope(self._session_factory) as session:
            if self._transition(request_id, from_statuses, to_status, session=session, **values):
                return
            current = session.get(AbisRequest, request_id)
            if current is None:
                raise DedupError(ErrorKind.UNKNOWN_REQUEST_ID, "No tracked request", request_id=request_id)
            raise DedupError(
                ErrorKind.INVALID_STATE_TRANSITION,
                f"Cannot move request to {to_status.value}",
                request_id=request_id,
                current_status=current.status.value,
                expected_status="|".join(s.value for s in from_statuses),
            )

    def mark_processed(self, request_id: str) -> None:
        """SENT -> PROCESSED."""
        self._transition_or_raise(request_id, (RequestStatus.SENT,), RequestStatus.PROCESSED)
        logger.debug("Request processed", request_id=request_id)

    def mark_failed(self, request_id: str, reason: str = "") -> None:
        """CREATED|SENT -> FAILED. FAILED requests are terminal."""
        self._transition_or_raise(
            request_id,
            (RequestStatus.CREATED, RequestStatus.SENT),
            RequestStatus.FAILED,
            status_comment=reason or None,
        )
        logger.warning("Request marked failed", request_id=request_id, reason=reason)

    def expire_stale_requests(self, older_than: timedelta, now: Optional[datetime] = None) -> List[str]:
        """
        Fail every request that has been SENT for longer than ``older_than``.

        Args:
            older_than: Timeout measured from the moment the request was sent
            now: Reference time (default: datetime.now())

        Returns:
            Ids of the requests this call expired
        """
        cutoff = (now or datetime.now()) - older_than
        expired: List[str] = []
        with session_scope(self._session_factory) as session:
            candidates = session.execute(
                select(AbisRequest.request_id)
                .where(AbisRequest.status == RequestStatus.SENT, AbisRequest.sent_at < cutoff)
                .order_by(AbisRequest.sent_at)
            ).scalars().all()
            for request_id in candidates:
                if self._transition(
                    request_id,
                    (RequestStatus.SENT,),
                    RequestStatus.FAILED,
                    session=session,
                    status_comment=f"expired: no response within {older_than}",
                ):
                    expired.append(request_id)

        if expired:
            logger.record_requests_expired(len(expired))
            logger.warning("Stale ABIS requests expired", count=len(expired), cutoff=cutoff.isoformat())
        return expired

    # Lookups

    @staticmethod
    def _find_active(
        session: Session, bio_ref_id: str, transaction_id: str, request_type: RequestType
    ) -> Optional[AbisRequest]:
        return session.execute(
            select(AbisRequest).where(
                AbisRequest.bio_ref_id == bio_ref_id,
                AbisRequest.transaction_id == transaction_id,
                AbisRequest.request_type == request_type,
                AbisRequest.status != RequestStatus.FAILED,
            )
        ).scalars().first()

    def get_request(self, request_id: str) -> AbisRequest:
        with session_scope(self._session_factory) as session:
            request = session.get(AbisRequest, request_id)
        if request is None:
            raise DedupError(ErrorKind.UNKNOWN_REQUEST_ID, "No tracked request", request_id=request_id)
        return request

    def get_requests_by_batch(self, batch_id: str) -> List[AbisRequest]:
        with session_scope(self._session_factory) as session:
            return list(session.execute(
                select(AbisRequest).where(AbisRequest.batch_id == batch_id).order_by(AbisRequest.created_at)
            ).scalars())

    def get_requests_by_transaction(
        self, transaction_id: str, request_type: Optional[RequestType] = None
    ) -> List[AbisRequest]:
        stmt = select(AbisRequest).where(AbisRequest.transaction_id == transaction_id)
        if request_type is not None:
            stmt = stmt.where(AbisRequest.request_type == RequestType(request_type))
        with session_scope(self._session_factory) as session:
            return list(session.execute(stmt.order_by(AbisRequest.created_at)).scalars())

    def get_insert_requests_by_reference(self, bio_ref_id: str) -> List[AbisRequest]:
        with session_scope(self._session_factory) as session:
            return list(session.execute(
                select(AbisRequest).where(
                    AbisRequest.bio_ref_id == bio_ref_id,
                    AbisRequest.request_type == RequestType.INSERT,
                ).order_by(AbisRequest.created_at)
            ).scalars())

    def get_batch_id(self, request_id: str) -> str:
        return self.get_request(request_id).batch_id

    def get_transaction_id(self, request_id: str) -> str:
        return self.get_request(request_id).transaction_id

    def get_batch_statuses(self, batch_id: str) -> List[RequestStatus]:
        return [r.status for r in self.get_requests_by_batch(batch_id)]

    def is_batch_complete(self, batch_id: str) -> bool:
        """
        True when every (reference, type) pair of the batch has a PROCESSED
        request. A pair whose only requests FAILED keeps the batch open until
        it is resubmitted or the transaction is failed.
        """
        processed: Dict[tuple, bool] = {}
        for r in self.get_requests_by_batch(batch_id):
            key = (r.bio_ref_id, r.request_type)
            processed[key] = processed.get(key, False) or r.status == RequestStatus.PROCESSED
        return bool(processed) and all(processed.values())

    def count_failed_attempts(self, bio_ref_id: str, transaction_id: str, request_type: RequestType) -> int:
        with session_scope(self._session_factory) as session:
            return session.execute(
                select(func.count()).select_from(AbisRequest).where(
                    AbisRequest.bio_ref_id == bio_ref_id,
                    AbisRequest.transaction_id == transaction_id,
                    AbisRequest.request_type == RequestType(request_type),
                    AbisRequest.status == RequestStatus.FAILED,
                )
            ).scalar_one()
