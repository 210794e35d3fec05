"""
Append-only balance transaction log.

Every balance-affecting event is recorded here once. Entries are never edited
except for the status of a withdrawal debit, which moves from pending to
completed (payout sent) or cancelled (withdrawal rejected). The commission
uniqueness constraint on ``(user_id, related_transaction_id, tier)`` is what
makes commission crediting idempotent.
"""

import math
from typing import Optional
from uuid import UUID

from .exceptions import DuplicateOperation, InvalidState
from .models import (
    BalanceTransaction,
    EntryCategory,
    EntryStatus,
    EntryType,
    TransactionPage,
    utcnow,
)
from .storage import DuplicateKeyError, InMemoryStorage


class TransactionLedger:
    def __init__(self, storage: InMemoryStorage):
        self.collection = storage.balance_transactions

    def append(self, entry: BalanceTransaction) -> BalanceTransaction:
        try:
            doc = self.collection.insert_one(entry.model_dump())
        except DuplicateKeyError as e:
            raise DuplicateOperation(
                f"{entry.category.value} already recorded for user {entry.user_id} "
                f"and transaction {entry.related_transaction_id}"
            ) from e
        return BalanceTransaction(**doc)

    def find_commission(self, user_id: str, related_transaction_id: str, tier: int) -> Optional[BalanceTransaction]:
        doc = self.collection.find_one({
            "user_id": user_id,
            "related_transaction_id": related_transaction_id,
            "tier": tier,
            "category": EntryCategory.COMMISSION,
        })
        return BalanceTransaction(**doc) if doc else None

    def withdrawal_debit(self, withdrawal_id: UUID) -> Optional[BalanceTransaction]:
        doc = self.collection.find_one({
            "withdrawal_id": withdrawal_id,
            "type": EntryType.DEBIT,
            "category": EntryCategory.WITHDRAWAL,
        })
        return BalanceTransaction(**doc) if doc else None

    def mark_withdrawal_debit(self, withdrawal_id: UUID, status: EntryStatus,
                              description: Optional[str] = None) -> Optional[BalanceTransaction]:
        """Move a withdrawal debit out of pending. This is the only edit the log allows."""
        if status == EntryStatus.PENDING:
            raise InvalidState("A withdrawal debit can only leave the pending status")
        changes: dict = {"status": status, "updated_at": utcnow()}
        if description:
            changes["description"] = description
        doc = self.collection.update_one(
            {
                "withdrawal_id": withdrawal_id,
                "type": EntryType.DEBIT,
                "category": EntryCategory.WITHDRAWAL,
                "status": EntryStatus.PENDING,
            },
            {"$set": changes},
        )
        return BalanceTransaction(**doc) if doc else None

    def reopen_withdrawal_debit(self, withdrawal_id: UUID) -> Optional[BalanceTransaction]:
        # Compensation only: undoes mark_withdrawal_debit when its unit of work failed
        doc = self.collection.update_one(
            {"withdrawal_id": withdrawal_id, "type": EntryType.DEBIT, "category": EntryCategory.WITHDRAWAL},
            {"$set": {"status": EntryStatus.PENDING, "updated_at": utcnow()}},
        )
        return BalanceTransaction(**doc) if doc else None

    def remove(self, entry_id: UUID) -> bool:
        # Compensation only: undoes an append whose unit of work failed
        return self.collection.delete_one({"id": entry_id})

    def recent(self, user_id: str, limit: int = 10) -> list[BalanceTransaction]:
        docs = self.collection.find({"user_id": user_id}, sort=("created_at", True), limit=limit)
        return [BalanceTransaction(**d) for d in docs]

    def query(
        self,
        user_id: str,
        type: Optional[EntryType] = None,
        category: Optional[EntryCategory] = None,
        status: Optional[EntryStatus] = None,
        page: int = 1,
        limit: int = 20,
    ) -> TransactionPage:
        filter: dict = {"user_id": user_id}
        if type is not None:
            filter["type"] = type
        if category is not None:
            filter["category"] = category
        if status is not None:
            filter["status"] = status

        page = max(page, 1)
        limit = max(limit, 1)
        total = self.collection.count(filter)
        docs = self.collection.find(filter, sort=("created_at", True), skip=(page - 1) * limit, limit=limit)
        return TransactionPage(
            user_id=user_id,
            entries=[BalanceTransaction(**d) for d in docs],
            total=total,
            page=page,
            limit=limit,
            pages=math.ceil(total / limit) if total else 0,
        )
