"""
Credit ledger: atomic debit and credit against ``users.credits``.

Debits are a single conditional UPDATE so two concurrent admissions can never
both spend the last credit. When a ``job_id`` is given the operation is
recorded in ``ledger_entries`` in the same transaction; the unique
``(user_id, job_id, kind)`` constraint makes a repeated debit or refund for
the same job a no-op.
"""

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Iterator, Optional

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from ..database import session_scope
from ..errors import InsufficientCredit, NotFound
from ..models import LedgerEntry, LedgerKind, User

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LedgerResult:
    ok: bool
    new_balance: int
    applied: bool = True


class CreditLedger:
    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    @contextmanager
    def _scope(self, session: Optional[Session]) -> Iterator[Session]:
        # A caller-provided session belongs to a larger transaction; commit is theirs.
        if session is not None:
            yield session
            return
        with session_scope(self.session_factory) as own:
            yield own

    def balance(self, user_id: str, session: Optional[Session] = None) -> int:
        with self._scope(session) as s:
            credits = s.query(User.credits).filter(User.id == user_id).scalar()
        if credits is None:
            raise NotFound("user", user_id)
        return credits

    def debit(
        self,
        user_id: str,
        amount: int,
        job_id: Optional[str] = None,
        session: Optional[Session] = None,
    ) -> LedgerResult:
        if amount <= 0:
            raise ValueError("debit amount must be positive")
        try:
            with self._scope(session) as s:
                if job_id is not None and self._already_applied(s, user_id, job_id, LedgerKind.DEBIT):
                    logger.info("Debit for job %s already applied, skipping", job_id)
                    return LedgerResult(ok=True, new_balance=self.balance(user_id, s), applied=False)

                result = s.execute(
                    update(User)
                    .where(User.id == user_id, User.credits >= amount)
                    .values(credits=User.credits - amount)
                )
                if result.rowcount == 0:
                    current = s.query(User.credits).filter(User.id == user_id).scalar()
                    if current is None:
                        raise NotFound("user", user_id)
                    raise InsufficientCredit(user_id, current, amount)

                if job_id is not None:
                    s.add(LedgerEntry(user_id=user_id, job_id=job_id, kind=LedgerKind.DEBIT.value, amount=amount))
                    s.flush()
                new_balance = self.balance(user_id, s)
        except IntegrityError:
            if session is not None:
                raise
            logger.warning("Concurrent debit for job %s detected, keeping the first", job_id)
            return LedgerResult(ok=True, new_balance=self.balance(user_id), applied=False)

        logger.info("Debited %d credit(s) from user %s, balance now %d", amount, user_id, new_balance)
        return LedgerResult(ok=True, new_balance=new_balance)

    def credit(
        self,
        user_id: str,
        amount: int,
        job_id: Optional[str] = None,
        session: Optional[Session] = None,
    ) -> LedgerResult:
        if amount <= 0:
            raise ValueError("credit amount must be positive")
        try:
            with self._scope(session) as s:
                if job_id is not None and self._already_applied(s, user_id, job_id, LedgerKind.REFUND):
                    logger.info("Refund for job %s already applied, skipping", job_id)
                    return LedgerResult(ok=True, new_balance=self.balance(user_id, s), applied=False)

                result = s.execute(
                    update(User).where(User.id == user_id).values(credits=User.credits + amount)
                )
                if result.rowcount == 0:
                    raise NotFound("user", user_id)

                if job_id is not None:
                    s.add(LedgerEntry(user_id=user_id, job_id=job_id, kind=LedgerKind.REFUND.value, amount=amount))
                    s.flush()
                new_balance = self.balance(user_id, s)
        except IntegrityError:
            if session is not None:
                raise
            logger.warning("Concurrent refund for job %s detected, keeping the first", job_id)
            return LedgerResult(ok=True, new_balance=self.balance(user_id), applied=False)

        logger.info("Credited %d credit(s) to user %s, balance now %d", amount, user_id, new_balance)
        return LedgerResult(ok=True, new_balance=new_balance)

    def refund(self, user_id: str, amount: int, job_id: str) -> LedgerResult:
        """Job-scoped credit; safe to call from every failure path of the same job."""
        return self.credit(user_id, amount, job_id=job_id)

    def has_refund(self, user_id: str, job_id: str) -> bool:
        with session_scope(self.session_factory) as s:
            return self._already_applied(s, user_id, job_id, LedgerKind.REFUND)

    @staticmethod
    def _already_applied(session: Session, user_id: str, job_id: str, kind: LedgerKind) -> bool:
        return (
            session.query(LedgerEntry.id)
            .filter(
                LedgerEntry.user_id == user_id,
                LedgerEntry.job_id == job_id,
                LedgerEntry.kind == kind.value,
            )
            .first()
            is not None
        )
