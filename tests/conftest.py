"""
Pytest configuration and shared fixtures.
"""

import pytest
from pathlib import Path
from typing import Dict, Any

from abisdedup.abis.correlator import AbisResponseCorrelator, ConclusivenessPolicy
from abisdedup.abis.dispatcher import InMemoryDispatcher
from abisdedup.abis.tracker import AbisRequestTracker
from abisdedup.bio_reference import BioReferenceStore
from abisdedup.database import create_session_factory, init_database, reset_engines
from abisdedup.engine import DedupDecisionEngine
from abisdedup.logger import get_logger
from abisdedup.manual_verification import ManualVerificationQueue


@pytest.fixture(autouse=True)
def _fresh_state():
    """Clear logger metrics and cached engines between tests."""
    get_logger().reset_metrics()
    yield
    reset_engines()


@pytest.fixture
def db_path(tmp_path) -> Path:
    path = tmp_path / "dedup.db"
    init_database(path)
    return path


@pytest.fixture
def session_factory(db_path):
    return create_session_factory(db_path)


@pytest.fixture
def dispatcher() -> InMemoryDispatcher:
    return InMemoryDispatcher()


@pytest.fixture
def references(session_factory) -> BioReferenceStore:
    return BioReferenceStore(session_factory)


@pytest.fixture
def tracker(session_factory, dispatcher) -> AbisRequestTracker:
    return AbisRequestTracker(session_factory, dispatcher)


@pytest.fixture
def correlator(session_factory) -> AbisResponseCorrelator:
    return AbisResponseCorrelator(session_factory)


@pytest.fixture
def queue(session_factory) -> ManualVerificationQueue:
    return ManualVerificationQueue(session_factory)


@pytest.fixture
def engine(session_factory, references, tracker, correlator, queue) -> DedupDecisionEngine:
    return DedupDecisionEngine(
        session_factory,
        references,
        tracker,
        correlator,
        queue,
        policy=ConclusivenessPolicy(high_confidence_threshold=0.90, min_score_gap=0.30),
        max_retries=2,
        retry_base_delay=0.0,
        max_resubmissions=1,
    )


@pytest.fixture
def abis_response() -> Dict[str, Any]:
    """Valid requestId-addressed ABIS response."""
    return {
        "requestId": "req-1",
        "candidates": [
            {"referenceId": "ref-a", "score": 0.97},
            {"referenceId": "ref-b", "score": 0.40},
        ],
    }
