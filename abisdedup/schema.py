from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .database import RequestType

REQUEST_TYPES = {t.value for t in RequestType}


def _is_non_empty_str(v: Any) -> bool:
    return isinstance(v, str) and v.strip() != ""


def _is_number(v: Any) -> bool:
    return isinstance(v, (int, float)) and not isinstance(v, bool)


@dataclass
class AbisResponsePayload:
    request_id: Optional[str]
    batch_id: Optional[str]
    request_type: Optional[RequestType]
    bio_ref_id: Optional[str]
    candidates: List[tuple] = field(default_factory=list)


def validate_abis_response(data: Dict[str, Any]) -> List[str]:
    """
    Returns a list of validation error messages. Empty list means valid.

    A response names its request either directly (requestId) or through
    its batch (batchId + requestType, optionally bioRefId).
    """
    if not isinstance(data, dict):
        return ["Payload must be a JSON object"]

    errors: List[str] = []

    has_request = "requestId" in data
    has_batch = "batchId" in data
    if not has_request and not has_batch:
        errors.append("Missing required field: requestId or batchId")

    for f in ("requestId", "batchId", "bioRefId"):
        if f in data and not _is_non_empty_str(data[f]):
            errors.append(f"Field '{f}' must be a non-empty string")

    if "requestType" in data and data["requestType"] not in REQUEST_TYPES:
        errors.append(f"Field 'requestType' must be one of {sorted(REQUEST_TYPES)}")
    if has_batch and not has_request and "requestType" not in data:
        errors.append("Field 'requestType' is required when only batchId is given")

    candidates = data.get("candidates", [])
    if not isinstance(candidates, list):
        errors.append("Field 'candidates' must be a list")
        return errors

    for i, c in enumerate(candidates):
        if not isinstance(c, dict):
            errors.append(f"Candidate {i} must be an object")
            continue
        if not _is_non_empty_str(c.get("referenceId")):
            errors.append(f"Candidate {i}: 'referenceId' must be a non-empty string")
        score = c.get("score")
        if not _is_number(score):
            errors.append(f"Candidate {i}: 'score' must be a number")
        elif score < 0:
            errors.append(f"Candidate {i}: 'score' must not be negative")

    return errors


def parse_abis_response(data: Dict[str, Any]) -> AbisResponsePayload:
    """
    Validate and convert an inbound ABIS payload.

    Raises:
        ValueError: With all validation messages joined
    """
    errors = validate_abis_response(data)
    if errors:
        raise ValueError("Invalid ABIS response: " + "; ".join(errors))

    request_type = data.get("requestType")
    return AbisResponsePayload(
        request_id=data.get("requestId"),
        batch_id=data.get("batchId"),
        request_type=RequestType(request_type) if request_type else None,
        bio_ref_id=data.get("bioRefId"),
        candidates=[(c["referenceId"], float(c["score"])) for c in data.get("candidates", [])],
    )
