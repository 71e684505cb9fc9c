"""
BaseService -- abstract base for kernel services.

Responsibility:
    Common constructor and session contract for every write service in the
    kernel.  Services receive a SQLAlchemy ``Session`` and an injected
    ``Clock``, persist via ``session.flush()``, and never commit.

Architecture position:
    Kernel > Services -- imperative shell.  Transaction ownership lives one
    layer up (``stock_services.ledger_runner`` or the caller's
    ``session_scope``).

Failure modes:
    - A subclass that commits breaks the all-or-nothing guarantee of
      ``append_movement_batch`` and of stocktake completion.
"""

from abc import ABC
from typing import Generic, TypeVar

from sqlalchemy.orm import Session

from stock_kernel.db.base import Base
from stock_kernel.domain.clock import Clock, SystemClock

ModelType = TypeVar("ModelType", bound=Base)


class BaseService(ABC, Generic[ModelType]):
    """
    Abstract base class for kernel services.

    Contract:
        Accepts a ``Session`` from the caller and flushes within its
        transaction.  Time comes from ``clock``; services never read the
        wall clock directly.

    Guarantees:
        - Never calls ``session.commit()`` or ``session.rollback()``.

    Non-goals:
        - Read-only queries belong in ``stock_kernel/selectors/``.
    """

    def __init__(self, session: Session, clock: Clock | None = None):
        self.session = session
        self.clock = clock or SystemClock()
