"""
Execution strategies for multi-document operations.

An operation is a callable taking a ``UnitOfWork``. Each step that writes
registers the action that undoes it. With a store that supports
transactions the whole operation runs inside one and the registered
compensations are never needed; otherwise the steps run one after another
and, if any step fails, the compensations run in reverse order before the
error propagates.
"""

import logging
from typing import Any, Callable, Protocol, TypeVar

from .storage import InMemoryStorage


logger = logging.getLogger(__name__)

T = TypeVar("T")


class UnitOfWork:
    def __init__(self):
        self._compensations: list[tuple[str, Callable[[], Any]]] = []

    def on_rollback(self, description: str, action: Callable[[], Any]) -> None:
        self._compensations.append((description, action))

    def compensate(self) -> list[str]:
        """Undo registered steps, newest first. Returns the descriptions that failed."""
        failed = []
        while self._compensations:
            description, action = self._compensations.pop()
            try:
                action()
            except Exception:
                logger.exception("Compensation failed: %s", description)
                failed.append(description)
        return failed


class ExecutionStrategy(Protocol):
    transactional: bool

    def run(self, operation: Callable[[UnitOfWork], T]) -> T:
        ...


class TransactionalExecution:
    transactional = True

    def __init__(self, storage: InMemoryStorage):
        self.storage = storage

    def run(self, operation: Callable[[UnitOfWork], T]) -> T:
        with self.storage.transaction():
            return operation(UnitOfWork())


class CompensatingExecution:
    transactional = False

    def run(self, operation: Callable[[UnitOfWork], T]) -> T:
        uow = UnitOfWork()
        try:
            return operation(uow)
        except Exception:
            failed = uow.compensate()
            if failed:
                logger.error(
                    "Operation left partial state after failed compensation",
                    extra={"failed_compensations": failed},
                )
            raise


def select_execution(storage: InMemoryStorage, supports_transactions: bool) -> ExecutionStrategy:
    if supports_transactions and storage.supports_transactions:
        return TransactionalExecution(storage)
    return CompensatingExecution()
