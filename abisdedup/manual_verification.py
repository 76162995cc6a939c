"""
Manual Verification Queue.

Responsibilities:
- Hold inconclusive matches for human review, oldest first.
- Hand each task to exactly one verifier and record the verifier's outcome.
- Own every ManualVerificationTask status transition:
  PENDING -> ASSIGNED -> COMPLETED (and ASSIGNED -> PENDING on release).
- Close the open tasks of a transaction that has finished, and re-arm a
  finished task when a reopened registration needs the same review again.

Non-Responsibilities:
- No transaction status changes; the engine reacts to outcomes.
- No verifier UI.

Invariant:
A task is claimed by a conditional update on its status, so concurrent
assign_next calls can never hand the same task to two verifiers.
"""

from datetime import datetime
from typing import List, Optional

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session, sessionmaker

from .database import (
    TERMINAL_STATUSES,
    ManualOutcome,
    ManualVerificationTask,
    MatchType,
    RegistrationTransaction,
    TaskStatus,
    session_scope,
)
from .errors import DedupError, ErrorKind
from .logger import get_logger

logger = get_logger()

_Task = ManualVerificationTask

# Reason code for tasks closed because their transaction finished
SUPERSEDED = "SUPERSEDED"


class ManualVerificationQueue:
    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    def enqueue(
        self,
        registration_id: str,
        matched_ref_id: str,
        transaction_id: str,
        match_type: MatchType = MatchType.BIO,
        now: Optional[datetime] = None,
    ) -> ManualVerificationTask:
        """
        Create a PENDING task unless one already exists for the key.

        A task left behind by an earlier transaction of the registration is
        re-armed for the new one once it is COMPLETED or its transaction is
        terminal, so reopening a registration gets a fresh review.
        """
        now = now or datetime.now()
        with session_scope(self._session_factory) as session:
            task = session.get(_Task, (registration_id, matched_ref_id))
            if task is not None and task.transaction_id != transaction_id:
                if self._is_reusable(session, task):
                    previous = task.transaction_id
                    task = self._rearm(session, task, transaction_id, match_type, now)
                    if task is not None:
                        logger.record_task_event("rearmed")
                        logger.info("Manual verification task re-armed", registration_id=registration_id,
                                    matched_ref_id=matched_ref_id, transaction_id=transaction_id,
                                    previous_transaction_id=previous)
                        return task
                    task = session.get(_Task, (registration_id, matched_ref_id))
                else:
                    logger.warning("Task held by another live transaction", registration_id=registration_id,
                                   matched_ref_id=matched_ref_id, transaction_id=transaction_id,
                                   held_by=task.transaction_id)
            if task is not None:
                logger.debug("Task already queued", registration_id=registration_id,
                              matched_ref_id=matched_ref_id, status=task.status.value)
                return task
            task = _Task(
                registration_id=registration_id,
                matched_ref_id=matched_ref_id,
                transaction_id=transaction_id,
                match_type=MatchType(match_type),
                status=TaskStatus.PENDING,
                created_at=now,
            )
            session.add(task)
        logger.record_task_event("enqueued")
        logger.info("Manual verification task queued", registration_id=registration_id,
                    matched_ref_id=matched_ref_id, transaction_id=transaction_id)
        return task

    @staticmethod
    def _is_reusable(session: Session, task: ManualVerificationTask) -> bool:
        if task.status == TaskStatus.COMPLETED:
            return True
        owner = session.get(RegistrationTransaction, task.transaction_id)
        return owner is None or owner.status in TERMINAL_STATUSES

    @staticmethod
    def _rearm(
        session: Session,
        task: ManualVerificationTask,
        transaction_id: str,
        match_type: MatchType,
        now: datetime,
    ) -> Optional[ManualVerificationTask]:
        """Rebind a finished task to a new transaction; None if it changed under us."""
        rearmed = session.execute(
            update(_Task)
            .where(
                _Task.registration_id == task.registration_id,
                _Task.matched_ref_id == task.matched_ref_id,
                _Task.transaction_id == task.transaction_id,
                _Task.status == task.status,
            )
            .values(
                transaction_id=transaction_id,
                match_type=MatchType(match_type),
                status=TaskStatus.PENDING,
                verifier_id=None,
                outcome=None,
                reason_code=None,
                created_at=now,
                assigned_at=None,
                completed_at=None,
            )
            .execution_options(synchronize_session=False)
        ).rowcount == 1
        session.refresh(task)
        return task if rearmed else None

    def close_tasks_for_transaction(self, transaction_id: str, reason_code: str = SUPERSEDED) -> int:
        """
        Complete every open task of a finished transaction without an outcome.

        Returns:
            Number of tasks closed
        """
        with session_scope(self._session_factory) as session:
            closed = session.execute(
                update(_Task)
                .where(
                    _Task.transaction_id == transaction_id,
                    _Task.status.in_([TaskStatus.PENDING, TaskStatus.ASSIGNED]),
                )
                .values(status=TaskStatus.COMPLETED, outcome=None, reason_code=reason_code,
                        completed_at=datetime.now())
                .execution_options(synchronize_session=False)
            ).rowcount
        if closed:
            logger.record_task_event("closed")
            logger.info("Open manual verification tasks closed", transaction_id=transaction_id,
                        closed=closed, reason_code=reason_code)
        return closed

    def assign_next(self, verifier_id: str, match_type: Optional[MatchType] = None) -> Optional[ManualVerificationTask]:
        """
        Claim the oldest PENDING task for a verifier.

        Args:
            verifier_id: Verifier taking the task
            match_type: Only consider this type (default: any)

        Returns:
            The ASSIGNED task, or None when nothing is pending
        """
        skipped = set()
        while True:
            with session_scope(self._session_factory) as session:
                stmt = select(_Task.registration_id, _Task.matched_ref_id).where(
                    _Task.status == TaskStatus.PENDING
                )
                if match_type is not None:
                    stmt = stmt.where(_Task.match_type == MatchType(match_type))
                keys = [
                    tuple(row) for row in session.execute(
                        stmt.order_by(_Task.created_at, _Task.registration_id, _Task.matched_ref_id)
                    )
                ]
                keys = [k for k in keys if k not in skipped]
                if not keys:
                    return None

                registration_id, matched_ref_id = keys[0]
                claimed = session.execute(
                    update(_Task)
                    .where(
                        _Task.registration_id == registration_id,
                        _Task.matched_ref_id == matched_ref_id,
                        _Task.status == TaskStatus.PENDING,
                    )
                    .values(status=TaskStatus.ASSIGNED, verifier_id=verifier_id, assigned_at=datetime.now())
                    .execution_options(synchronize_session=False)
                ).rowcount == 1
                if claimed:
                    task = session.get(_Task, (registration_id, matched_ref_id))
                    session.refresh(task)
            if claimed:
                logger.record_task_event("assigned")
                logger.info("Manual verification task assigned", verifier_id=verifier_id,
                            registration_id=registration_id, matched_ref_id=matched_ref_id)
                return task
            # Another verifier claimed it between our read and update
            skipped.add((registration_id, matched_ref_id))

    def resolve(
        self,
        registration_id: str,
        matched_ref_id: str,
        verifier_id: str,
        outcome: ManualOutcome,
        reason_code: Optional[str] = None,
    ) -> ManualVerificationTask:
        """
        ASSIGNED -> COMPLETED with the verifier's outcome.

        Raises:
            DedupError(RECORD_NOT_FOUND): No such task
            DedupError(INVALID_STATE_TRANSITION): Task is not ASSIGNED
            DedupError(NOT_ASSIGNED_TO_VERIFIER): Task belongs to another verifier
        """
        outcome = ManualOutcome(outcome)
        with session_scope(self._session_factory) as session:
            done = session.execute(
                update(_Task)
                .where(
                    _Task.registration_id == registration_id,
                    _Task.matched_ref_id == matched_ref_id,
                    _Task.status == TaskStatus.ASSIGNED,
                    _Task.verifier_id == verifier_id,
                )
                .values(
                    status=TaskStatus.COMPLETED,
                    outcome=outcome,
                    reason_code=reason_code,
                    completed_at=datetime.now(),
                )
                .execution_options(synchronize_session=False)
            ).rowcount == 1
            task = session.get(_Task, (registration_id, matched_ref_id))
            if not done:
                self._raise_for_task(task, registration_id, matched_ref_id, verifier_id)
            session.refresh(task)

        logger.record_task_event("resolved")
        logger.info("Manual verification resolved", registration_id=registration_id,
                    matched_ref_id=matched_ref_id, verifier_id=verifier_id, outcome=outcome.value)
        return task

    def release(self, registration_id: str, matched_ref_id: str, verifier_id: str) -> ManualVerificationTask:
        """Give an ASSIGNED task back to the queue, keeping its original position."""
        with session_scope(self._session_factory) as session:
            done = session.execute(
                update(_Task)
                .where(
                    _Task.registration_id == registration_id,
                    _Task.matched_ref_id == matched_ref_id,
                    _Task.status == TaskStatus.ASSIGNED,
                    _Task.verifier_id == verifier_id,
                )
                .values(status=TaskStatus.PENDING, verifier_id=None, assigned_at=None)
                .execution_options(synchronize_session=False)
            ).rowcount == 1
            task = session.get(_Task, (registration_id, matched_ref_id))
            if not done:
                self._raise_for_task(task, registration_id, matched_ref_id, verifier_id)
            session.refresh(task)
        logger.record_task_event("released")
        return task

    @staticmethod
    def _raise_for_task(task, registration_id: str, matched_ref_id: str, verifier_id: str) -> None:
        if task is None:
            raise DedupError(ErrorKind.RECORD_NOT_FOUND, "No manual verification task",
                             registration_id=registration_id, matched_ref_id=matched_ref_id)
        if task.status != TaskStatus.ASSIGNED:
            raise DedupError(
                ErrorKind.INVALID_STATE_TRANSITION,
                "Task is not assigned",
                registration_id=registration_id,
                matched_ref_id=matched_ref_id,
                current_status=task.status.value,
            )
        raise DedupError(
            ErrorKind.NOT_ASSIGNED_TO_VERIFIER,
            "Task is assigned to another verifier",
            registration_id=registration_id,
            matched_ref_id=matched_ref_id,
            verifier_id=verifier_id,
            assigned_to=task.verifier_id,
        )

    # Lookups

    def get_task(self, registration_id: str, matched_ref_id: str) -> ManualVerificationTask:
        with session_scope(self._session_factory) as session:
            task = session.get(_Task, (registration_id, matched_ref_id))
        if task is None:
            raise DedupError(ErrorKind.RECORD_NOT_FOUND, "No manual verification task",
                             registration_id=registration_id, matched_ref_id=matched_ref_id)
        return task

    def get_assigned(self, verifier_id: str) -> List[ManualVerificationTask]:
        with session_scope(self._session_factory) as session:
            return list(session.execute(
                select(_Task)
                .where(_Task.verifier_id == verifier_id, _Task.status == TaskStatus.ASSIGNED)
                .order_by(_Task.created_at)
            ).scalars())

    def get_tasks_for_transaction(self, transaction_id: str) -> List[ManualVerificationTask]:
        with session_scope(self._session_factory) as session:
            return list(session.execute(
                select(_Task).where(_Task.transaction_id == transaction_id).order_by(_Task.created_at)
            ).scalars())

    def get_pending_count(self, match_type: Optional[MatchType] = None) -> int:
        stmt = select(func.count()).select_from(_Task).where(_Task.status == TaskStatus.PENDING)
        if match_type is not None:
            stmt = stmt.where(_Task.match_type == MatchType(match_type))
        with session_scope(self._session_factory) as session:
            return session.execute(stmt).scalar_one()
