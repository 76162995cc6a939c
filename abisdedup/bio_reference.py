"""
Bio-Reference Store.

Responsibilities:
- Allocate globally unique biometric reference ids for a registration.
- Resolve registration ids to references and back.

Non-Responsibilities:
- No biometric content; references are opaque handles.
- No dedup decisions.

Invariant:
A reference id, once created, is never reassigned or modified.
"""

import uuid
from typing import Iterable, Set

from sqlalchemy import select
from sqlalchemy.orm import sessionmaker

from .database import BioReference, session_scope
from .logger import get_logger

logger = get_logger()


def new_reference_id() -> str:
    """Allocate a reference id (random UUID, no coordination needed)."""
    return uuid.uuid4().hex


class BioReferenceStore:
    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    def create_reference(self, registration_id: str) -> str:
        bio_ref_id = new_reference_id()
        with session_scope(self._session_factory) as session:
            session.add(BioReference(bio_ref_id=bio_ref_id, registration_id=registration_id))
        logger.debug("Biometric reference created", registration_id=registration_id, bio_ref_id=bio_ref_id)
        return bio_ref_id

    def get_references_by_registration_id(self, registration_id: str) -> Set[str]:
        with session_scope(self._session_factory) as session:
            rows = session.execute(
                select(BioReference.bio_ref_id).where(BioReference.registration_id == registration_id)
            ).scalars()
            return set(rows)

    def get_registration_ids_by_references(self, bio_ref_ids: Iterable[str]) -> Set[str]:
        """Reverse lookup used to map ABIS candidates back to registrations."""
        ids = list(set(bio_ref_ids))
        if not ids:
            return set()
        with session_scope(self._session_factory) as session:
            rows = session.execute(
                select(BioReference.registration_id).where(BioReference.bio_ref_id.in_(ids))
            ).scalars()
            return set(rows)
