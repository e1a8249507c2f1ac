"""
Per-user single-slot admission for workflow instances.

Instances of one user are admitted strictly in FIFO order of their queue
position; an instance runs only while every earlier instance of the same user
is terminal. Different users never wait on each other.
"""

import logging
from datetime import datetime
from enum import Enum
from typing import List, Optional

from sqlalchemy import func, update
from sqlalchemy.orm import Session, sessionmaker

from ..database import session_scope
from ..models import InstanceStatus, WorkflowInstance

logger = logging.getLogger(__name__)

_ACTIVE = (InstanceStatus.QUEUED.value, InstanceStatus.RUNNING.value)


class Admission(str, Enum):
    ADMITTED = "admitted"
    WAIT = "wait"  # an earlier instance of the same user is still active
    SKIP = "skip"  # unknown, terminal or already running elsewhere


class ConcurrencyGate:
    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    def enqueue(self, session: Session, user_key: str, payload: dict, instance_id: str) -> WorkflowInstance:
        """Adds a queued instance inside the caller's transaction."""
        last = (
            session.query(func.max(WorkflowInstance.queue_position))
            .filter(WorkflowInstance.user_key == user_key)
            .scalar()
        )
        instance = WorkflowInstance(
            id=instance_id,
            user_key=user_key,
            queue_position=(last or 0) + 1,
            payload=payload,
            status=InstanceStatus.QUEUED.value,
            retry_count=0,
        )
        session.add(instance)
        session.flush()
        logger.info("Queued workflow %s for user %s at position %d", instance_id, user_key, instance.queue_position)
        return instance

    def try_acquire(self, instance_id: str, resume: bool = False) -> Admission:
        """
        Admit ``instance_id`` if it heads its user's queue.

        ``resume`` re-admits an instance that is already ``running``: used for
        the retry attempt and for recovery after a worker restart.
        """
        with session_scope(self.session_factory) as session:
            instance = session.get(WorkflowInstance, instance_id)
            if instance is None or instance.is_terminal:
                return Admission.SKIP
            if instance.status == InstanceStatus.RUNNING.value:
                return Admission.ADMITTED if resume else Admission.SKIP

            head = self._head(session, instance.user_key)
            if head is None or head.id != instance.id:
                logger.info("Workflow %s waiting behind %s", instance_id, head.id if head else None)
                return Admission.WAIT

            claimed = session.execute(
                update(WorkflowInstance)
                .where(
                    WorkflowInstance.id == instance_id,
                    WorkflowInstance.status == InstanceStatus.QUEUED.value,
                )
                .values(status=InstanceStatus.RUNNING.value, started_at=datetime.utcnow())
            )
            if claimed.rowcount == 0:
                return Admission.SKIP

        logger.info("Admitted workflow %s", instance_id)
        return Admission.ADMITTED

    def release(self, instance_id: str) -> Optional[str]:
        """Returns the next queued instance of the same user once ``instance_id`` is terminal."""
        with session_scope(self.session_factory) as session:
            instance = session.get(WorkflowInstance, instance_id)
            if instance is None or not instance.is_terminal:
                return None
            head = self._head(session, instance.user_key)
            if head is None or head.status != InstanceStatus.QUEUED.value:
                return None
            return head.id

    def pending_instances(self) -> List[str]:
        with session_scope(self.session_factory) as session:
            rows = (
                session.query(WorkflowInstance.id)
                .filter(WorkflowInstance.status.in_(_ACTIVE))
                .order_by(WorkflowInstance.user_key, WorkflowInstance.queue_position)
                .all()
            )
        return [instance_id for (instance_id,) in rows]

    @staticmethod
    def _head(session: Session, user_key: str) -> Optional[WorkflowInstance]:
        return (
            session.query(WorkflowInstance)
            .filter(
                WorkflowInstance.user_key == user_key,
                WorkflowInstance.status.in_(_ACTIVE),
            )
            .order_by(
                WorkflowInstance.queue_position,
                WorkflowInstance.created_at,
                WorkflowInstance.id,
            )
            .first()
        )
