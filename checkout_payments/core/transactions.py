"""
Unit-of-work strategies.

TransactionalExecutor runs each unit in one database transaction.
BestEffortExecutor serves storage without multi-statement atomicity: it
commits at every checkpoint and, when a later step fails, runs the
compensations registered so far in reverse order. The strategy is picked
once at startup by probing the database.
"""
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from typing import AsyncIterator, Awaitable, Callable, List

import structlog
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

logger = structlog.get_logger(__name__)

Compensation = Callable[[], Awaitable[None]]


class UnitOfWork:
    """A session plus the bookkeeping a strategy needs to finish or undo it."""

    def __init__(self, session: AsyncSession, atomic: bool, label: str):
        self.session = session
        self.atomic = atomic
        self.label = label
        self._compensations: List[Compensation] = []

    async def checkpoint(self) -> None:
        """Make prior steps durable (best effort) or visible to later statements (atomic)."""
        if self.atomic:
            await self.session.flush()
        else:
            await self.session.commit()

    def on_rollback(self, compensation: Compensation) -> None:
        """Register an undo step; only needed when the unit is not atomic."""
        if not self.atomic:
            self._compensations.append(compensation)

    async def compensate(self) -> None:
        """Run registered compensations newest first, committing after each."""
        while self._compensations:
            compensation = self._compensations.pop()
            try:
                await compensation()
                await self.session.commit()
            except Exception as e:
                await self.session.rollback()
                logger.error(
                    "compensation_failed",
                    unit=self.label,
                    error=str(e),
                    error_type=type(e).__name__,
                )


class TransactionExecutor(ABC):
    """Strategy for running a unit of work."""

    name: str = "abstract"
    atomic: bool = True

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    @abstractmethod
    def unit(self, label: str) -> "AsyncIterator[UnitOfWork]":
        """Open a unit of work as an async context manager."""


class TransactionalExecutor(TransactionExecutor):
    name = "transactional"
    atomic = True

    @asynccontextmanager
    async def unit(self, label: str) -> AsyncIterator[UnitOfWork]:
        async with self.session_factory() as session:
            uow = UnitOfWork(session, atomic=True, label=label)
            try:
                yield uow
                await session.commit()
            except Exception:
                await session.rollback()
                raise


class BestEffortExecutor(TransactionExecutor):
    name = "best_effort"
    atomic = False

    @asynccontextmanager
    async def unit(self, label: str) -> AsyncIterator[UnitOfWork]:
        logger.warning("reduced_consistency_unit", unit=label)
        async with self.session_factory() as session:
            uow = UnitOfWork(session, atomic=False, label=label)
            try:
                yield uow
                await session.commit()
            except Exception as e:
                await session.rollback()
                logger.warning(
                    "reduced_consistency_compensating",
                    unit=label,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                await uow.compensate()
                raise


async def probe_transaction_support(engine: AsyncEngine) -> bool:
    """
    Check that the database honours transactions and savepoints.

    Returns:
        bool: True if a transaction with a nested savepoint can be opened and rolled back
    """
    try:
        async with engine.connect() as conn:
            transaction = await conn.begin()
            savepoint = await conn.begin_nested()
            await savepoint.rollback()
            await transaction.rollback()
        return True
    except Exception as e:
        logger.warning("transaction_probe_failed", error=str(e), error_type=type(e).__name__)
        return False


async def select_executor(
    mode: str,
    engine: AsyncEngine,
    session_factory: async_sessionmaker[AsyncSession],
) -> TransactionExecutor:
    """
    Pick the unit-of-work strategy.

    Args:
        mode: "transactional", "best_effort" or "auto" (probe the database)
        engine: Engine to probe
        session_factory: Session factory handed to the executor

    Returns:
        TransactionExecutor: Selected strategy
    """
    if mode == "auto":
        supported = await probe_transaction_support(engine)
        mode = "transactional" if supported else "best_effort"

    if mode == "transactional":
        executor: TransactionExecutor = TransactionalExecutor(session_factory)
        logger.info("transaction_strategy_selected", strategy=executor.name)
    else:
        executor = BestEffortExecutor(session_factory)
        logger.warning(
            "transaction_strategy_selected",
            strategy=executor.name,
            message="Storage lacks atomic transactions; multi-step writes are compensated",
        )
    return executor
