"""
Sweeper for ABIS requests that never got a response.

Requests that stay SENT past the timeout are failed, then either resubmitted
in the same batch or, once resubmissions run out, their transaction is
failed. Without the sweep a lost response would keep its transaction
IN_PROGRESS forever.
"""

from datetime import datetime, timedelta
from typing import Optional, Tuple

from .abis.tracker import AbisRequestTracker
from .engine import DedupDecisionEngine
from .errors import DedupError
from .logger import get_logger

logger = get_logger()


def sweep_stale_requests(
    tracker: AbisRequestTracker,
    engine: DedupDecisionEngine,
    timeout: timedelta,
    now: Optional[datetime] = None,
) -> Tuple[int, int, int]:
    """
    Expire stale requests and react to each one.

    Args:
        tracker: Request tracker owning the requests
        engine: Engine deciding between resubmission and failure
        timeout: How long a request may stay SENT
        now: Reference time (default: datetime.now())

    Returns:
        Tuple of (expired, resubmitted, failed)
        failed counts requests whose transaction could not be kept alive
    """
    expired = tracker.expire_stale_requests(timeout, now=now)
    resubmitted = 0
    failed = 0

    for request_id in expired:
        try:
            replacement = engine.handle_expired_request(request_id)
        except DedupError as e:
            # One bad request must not stop the sweep
            logger.record_error(e.kind.value)
            logger.error("Could not handle expired request", request_id=request_id, error=e.to_dict())
            failed += 1
            continue
        if replacement is None:
            failed += 1
        else:
            resubmitted += 1

    logger.info(
        f"Sweep complete: {len(expired)} expired, {resubmitted} resubmitted, {failed} failed",
        timeout_seconds=int(timeout.total_seconds()),
    )
    return (len(expired), resubmitted, failed)
