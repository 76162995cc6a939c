"""
Tests for database.py - schema, engines and session handling.
"""

import pytest
from sqlalchemy import inspect
from sqlalchemy.exc import IntegrityError

from abisdedup.database import (
    AbisRequest,
    BioReference,
    RequestStatus,
    RequestType,
    create_session_factory,
    get_engine,
    get_session,
    init_database,
    session_scope,
)
from abisdedup.errors import DedupError, ErrorKind


class TestDatabaseInit:
    """Test database initialization."""

    def test_init_creates_database_file(self, tmp_path):
        db_path = tmp_path / "test.db"
        assert not db_path.exists()

        init_database(db_path)

        assert db_path.exists()

    def test_init_creates_tables(self, tmp_path):
        db_path = tmp_path / "test.db"
        init_database(db_path)

        tables = set(inspect(get_engine(db_path)).get_table_names())
        assert tables == {
            "registration_transaction",
            "reg_bio_ref",
            "abis_request",
            "abis_response",
            "abis_response_det",
            "reg_dedupe_list",
            "individual_demographic_dedup",
            "reg_manual_verification",
        }

    def test_init_creates_parent_directories(self, tmp_path):
        db_path = tmp_path / "nested" / "dir" / "test.db"

        init_database(db_path)

        assert db_path.exists()

    def test_init_is_idempotent(self, db_path):
        init_database(db_path)
        init_database(db_path)

    def test_engine_is_shared_per_path(self, db_path):
        assert get_engine(db_path) is get_engine(db_path)


class TestActiveRequestIndex:
    """At most one non-FAILED request per (reference, transaction, type)."""

    def _request(self, request_id, status=RequestStatus.SENT, request_type=RequestType.INSERT):
        return AbisRequest(
            request_id=request_id,
            bio_ref_id="ref-1",
            batch_id="batch-1",
            transaction_id="txn-1",
            request_type=request_type,
            status=status,
        )

    def test_second_active_request_rejected(self, db_path):
        session = get_session(db_path)
        session.add(self._request("r1"))
        session.commit()

        session.add(self._request("r2", status=RequestStatus.CREATED))
        with pytest.raises(IntegrityError):
            session.commit()
        session.close()

    def test_failed_requests_do_not_count(self, db_path):
        session = get_session(db_path)
        session.add(self._request("r1", status=RequestStatus.FAILED))
        session.add(self._request("r2", status=RequestStatus.FAILED))
        session.add(self._request("r3", status=RequestStatus.SENT))
        session.commit()

        assert session.query(AbisRequest).count() == 3
        session.close()

    def test_other_type_is_independent(self, db_path):
        session = get_session(db_path)
        session.add(self._request("r1", request_type=RequestType.INSERT))
        session.add(self._request("r2", request_type=RequestType.IDENTIFY))
        session.commit()
        session.close()


class TestSessionScope:
    """Test the unit-of-work helper."""

    def test_commits_on_success(self, session_factory):
        with session_scope(session_factory) as session:
            session.add(BioReference(bio_ref_id="ref-1", registration_id="reg-1"))

        with session_scope(session_factory) as session:
            assert session.get(BioReference, "ref-1").registration_id == "reg-1"

    def test_rolls_back_on_error(self, session_factory):
        with pytest.raises(RuntimeError):
            with session_scope(session_factory) as session:
                session.add(BioReference(bio_ref_id="ref-1", registration_id="reg-1"))
                session.flush()
                raise RuntimeError("boom")

        with session_scope(session_factory) as session:
            assert session.get(BioReference, "ref-1") is None

    def test_unreachable_database_is_storage_unavailable(self, tmp_path):
        """A database file in a directory that does not exist cannot be opened."""
        factory = create_session_factory(tmp_path / "missing" / "dedup.db")

        with pytest.raises(DedupError) as exc_info:
            with session_scope(factory) as session:
                session.get(BioReference, "ref-1")

        assert exc_info.value.kind == ErrorKind.STORAGE_UNAVAILABLE
        assert exc_info.value.retryable

    def test_missing_tables_is_storage_unavailable(self, tmp_path):
        factory = create_session_factory(tmp_path / "empty.db")

        with pytest.raises(DedupError) as exc_info:
            with session_scope(factory) as session:
                session.get(BioReference, "ref-1")

        assert exc_info.value.kind == ErrorKind.STORAGE_UNAVAILABLE
