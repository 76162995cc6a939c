"""
ABIS Response Correlator.

Responsibilities:
- Store inbound ABIS responses and their candidate matches against the
  request they answer.
- Merge candidates across a transaction's responses.
- Decide whether a candidate set can be resolved without a human.

Non-Responsibilities:
- No request status changes (the tracker owns them).
- No transaction status changes (the engine owns them).

Invariant:
A request has at most one stored response. Redelivered responses are
discarded (or rejected under the strict policy), never appended.
"""

import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Iterable, List, NamedTuple, Optional, Sequence, Tuple

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from ..database import (
    AbisRequest,
    AbisResponse,
    AbisResponseCandidate,
    RequestStatus,
    session_scope,
)
from ..errors import DedupError, ErrorKind
from ..logger import get_logger
from ..schema import parse_abis_response

logger = get_logger()


class Candidate(NamedTuple):
    matched_ref_id: str
    score: float


class DedupDecision(str, Enum):
    UNIQUE = "UNIQUE"
    DUPLICATE = "DUPLICATE"
    INCONCLUSIVE = "INCONCLUSIVE"


class DuplicateResponsePolicy(str, Enum):
    IGNORE = "ignore"
    REJECT = "reject"


@dataclass(frozen=True)
class ConclusivenessPolicy:
    """
    When a candidate set may be resolved automatically.

    The top score must be strictly above ``high_confidence_threshold`` and
    lead the runner-up by at least ``min_score_gap``.
    """

    high_confidence_threshold: float = 0.90
    min_score_gap: float = 0.30


def merge_candidates(candidates: Iterable[Tuple[str, float]]) -> List[Candidate]:
    """Keep the best score per matched reference, best first."""
    best: Dict[str, float] = {}
    for ref_id, score in candidates:
        score = float(score)
        if ref_id not in best or score > best[ref_id]:
            best[ref_id] = score
    return sorted(
        (Candidate(ref_id, score) for ref_id, score in best.items()),
        key=lambda c: (-c.score, c.matched_ref_id),
    )


def evaluate(candidates: Iterable[Tuple[str, float]], policy: ConclusivenessPolicy) -> DedupDecision:
    ranked = merge_candidates(candidates)
    if not ranked:
        return DedupDecision.UNIQUE
    top = ranked[0].score
    if top <= policy.high_confidence_threshold:
        return DedupDecision.INCONCLUSIVE
    # rounding keeps a gap of exactly min_score_gap from failing on float error
    if len(ranked) > 1 and round(top - ranked[1].score, 9) < policy.min_score_gap:
        return DedupDecision.INCONCLUSIVE
    return DedupDecision.DUPLICATE


def is_conclusive(candidates: Iterable[Tuple[str, float]], policy: ConclusivenessPolicy) -> bool:
    return evaluate(candidates, policy) != DedupDecision.INCONCLUSIVE


class AbisResponseCorrelator:
    def __init__(
        self,
        session_factory: sessionmaker,
        duplicate_policy: DuplicateResponsePolicy = DuplicateResponsePolicy.IGNORE,
    ):
        self._session_factory = session_factory
        self.duplicate_policy = DuplicateResponsePolicy(duplicate_policy)

    def ingest_response(self, request_id: str, candidates: Sequence[Tuple[str, float]]) -> str:
        """
        Store a response and its candidates for a tracked request.

        Args:
            request_id: Request the response answers
            candidates: (matched reference id, score) pairs, any order

        Returns:
            Response id; the already stored one for a redelivery under the
            IGNORE policy

        Raises:
            DedupError(UNKNOWN_REQUEST_ID): Request is not tracked
            DedupError(INVALID_STATE_TRANSITION): Request is not awaiting a response
            DedupError(DUPLICATE_RESPONSE): Redelivery under the REJECT policy
        """
        ranked = sorted(
            (Candidate(str(ref_id), float(score)) for ref_id, score in candidates),
            key=lambda c: (-c.score, c.matched_ref_id),
        )
        existing_id: Optional[str] = None
        try:
            with session_scope(self._session_factory) as session:
                request = session.get(AbisRequest, request_id)
                if request is None:
                    raise DedupError(ErrorKind.UNKNOWN_REQUEST_ID, "Response for untracked request",
                                     request_id=request_id)
                existing_id = self._existing_response_id(session, request_id)
                if existing_id is None:
                    if request.status not in (RequestStatus.SENT, RequestStatus.PROCESSED):
                        raise DedupError(
                            ErrorKind.INVALID_STATE_TRANSITION,
                            "Request is not awaiting a response",
                            request_id=request_id,
                            current_status=request.status.value,
                        )
                    response_id = str(uuid.uuid4())
                    session.add(AbisResponse(
                        response_id=response_id, request_id=request_id, batch_id=request.batch_id
                    ))
                    session.flush()
                    for rank, candidate in enumerate(ranked, start=1):
                        session.add(AbisResponseCandidate(
                            response_id=response_id,
                            matched_ref_id=candidate.matched_ref_id,
                            score=candidate.score,
                            rank=rank,
                        ))
        except IntegrityError:
            # A concurrent delivery of the same response committed first
            with session_scope(self._session_factory) as session:
                existing_id = self._existing_response_id(session, request_id)
            if existing_id is None:
                raise

        if existing_id is not None:
            return self._handle_duplicate(request_id, existing_id)

        logger.record_response()
        logger.info("ABIS response stored", request_id=request_id, response_id=response_id,
                    candidates=len(ranked))
        return response_id

    def _handle_duplicate(self, request_id: str, response_id: str) -> str:
        logger.record_response(duplicate=True)
        if self.duplicate_policy == DuplicateResponsePolicy.REJECT:
            raise DedupError(
                ErrorKind.DUPLICATE_RESPONSE,
                "Response already stored for request",
                request_id=request_id,
                response_id=response_id,
            )
        logger.info("Duplicate ABIS response discarded", request_id=request_id, response_id=response_id)
        return response_id

    @staticmethod
    def _existing_response_id(session: Session, request_id: str) -> Optional[str]:
        return session.execute(
            select(AbisResponse.response_id).where(AbisResponse.request_id == request_id)
        ).scalars().first()

    def ingest_payload(self, payload: Dict[str, Any]) -> str:
        """
        Validate an inbound ABIS message and ingest it.

        Raises:
            ValueError: Payload fails validation
            DedupError: As for ingest_response
        """
        parsed = parse_abis_response(payload)
        request_id = self.resolve_request_id(parsed.request_id, parsed.batch_id,
                                              parsed.request_type, parsed.bio_ref_id)
        return self.ingest_response(request_id, parsed.candidates)

    def resolve_request_id(self, request_id, batch_id, request_type, bio_ref_id=None) -> str:
        """Map a requestId- or batch-addressed response to the request it answers."""
        with session_scope(self._session_factory) as session:
            if request_id is not None:
                if batch_id is not None:
                    request = session.get(AbisRequest, request_id)
                    if request is not None and request.batch_id != batch_id:
                        raise DedupError(
                            ErrorKind.UNKNOWN_REQUEST_ID,
                            "Request does not belong to the given batch",
                            request_id=request_id,
                            batch_id=batch_id,
                        )
                return request_id

            stmt = select(AbisRequest.request_id).where(
                AbisRequest.batch_id == batch_id,
                AbisRequest.request_type == request_type,
                AbisRequest.status != RequestStatus.FAILED,
            )
            if bio_ref_id is not None:
                stmt = stmt.where(AbisRequest.bio_ref_id == bio_ref_id)
            matches = session.execute(stmt).scalars().all()
        if len(matches) != 1:
            raise DedupError(
                ErrorKind.UNKNOWN_REQUEST_ID,
                "Batch does not identify exactly one active request",
                batch_id=batch_id,
                request_type=request_type.value,
                bio_ref_id=bio_ref_id,
                matches=len(matches),
            )
        return matches[0]

    # Lookups

    def get_response_for_request(self, request_id: str) -> Optional[AbisResponse]:
        with session_scope(self._session_factory) as session:
            return session.execute(
                select(AbisResponse).where(AbisResponse.request_id == request_id)
            ).scalars().first()

    def get_candidates(self, response_ids: Iterable[str]) -> List[AbisResponseCandidate]:
        ids = list(response_ids)
        if not ids:
            return []
        with session_scope(self._session_factory) as session:
            return list(session.execute(
                select(AbisResponseCandidate)
                .where(AbisResponseCandidate.response_id.in_(ids))
                .order_by(AbisResponseCandidate.response_id, AbisResponseCandidate.rank)
            ).scalars())

    def aggregate_candidates_for_transaction(self, transaction_id: str) -> List[Candidate]:
        """All candidates reported for the transaction, best score per reference."""
        with session_scope(self._session_factory) as session:
            request_ids = session.execute(
                select(AbisRequest.request_id).where(AbisRequest.transaction_id == transaction_id)
            ).scalars().all()
            response_ids = session.execute(
                select(AbisResponse.response_id).where(AbisResponse.request_id.in_(request_ids))
            ).scalars().all() if request_ids else []
        rows = self.get_candidates(response_ids)
        return merge_candidates((row.matched_ref_id, row.score) for row in rows)

    def is_conclusive(self, candidates: Iterable[Tuple[str, float]], policy: ConclusivenessPolicy) -> bool:
        return is_conclusive(candidates, policy)

    def evaluate(self, candidates: Iterable[Tuple[str, float]], policy: ConclusivenessPolicy) -> DedupDecision:
        return evaluate(candidates, policy)
