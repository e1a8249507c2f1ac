"""
Admission of clip jobs: the only synchronous path into the workflow.

A rejected request leaves no trace. An accepted one has its credit reserved
and its queued instance committed before it is scheduled, so a lost
schedule call is recovered when a worker starts.
"""

import logging
from dataclasses import dataclass
from typing import Callable
from uuid import uuid4

from sqlalchemy.orm import sessionmaker

from ..credits import CLIP_CREATION_COST, can_create_clip
from ..database import session_scope
from ..errors import InsufficientCredit, NotFound
from ..models import User
from ..schemas import JobRequest
from .gate import ConcurrencyGate
from .ledger import CreditLedger

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SubmitResult:
    accepted: bool
    instance_id: str


class JobDispatcher:
    """
    Synchronous admission for clip jobs.

    The reservation debit and the queued workflow instance are committed in
    one transaction, then the instance is handed to ``schedule`` for
    asynchronous execution.
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        ledger: CreditLedger,
        gate: ConcurrencyGate,
        schedule: Callable[[str], None],
        cost: int = CLIP_CREATION_COST,
    ):
        self.session_factory = session_factory
        self.ledger = ledger
        self.gate = gate
        self.schedule = schedule
        self.cost = cost

    def submit(self, request: JobRequest) -> SubmitResult:
        instance_id = str(uuid4())
        with session_scope(self.session_factory) as session:
            user = session.get(User, request.user_id)
            if user is None:
                raise NotFound("user", request.user_id)
            if not can_create_clip(user.credits, self.cost):
                raise InsufficientCredit(request.user_id, user.credits, self.cost)

            self.ledger.debit(request.user_id, self.cost, job_id=instance_id, session=session)
            self.gate.enqueue(session, request.user_id, request.model_dump(mode="json"), instance_id)

        try:
            self.schedule(instance_id)
        except Exception:
            # The instance is committed as queued; worker start-up recovery will run it.
            logger.exception("Could not schedule workflow %s", instance_id)
        return SubmitResult(accepted=True, instance_id=instance_id)
