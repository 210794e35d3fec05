import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Optional, Protocol
from uuid import UUID

from .exceptions import PersistenceConflict
from .models import (
    AffiliateEarning,
    Balance,
    Bucket,
    EarningStatus,
    KycRecord,
    KycStatus,
    UserRecord,
    Withdrawal,
    WithdrawalStatus,
    utcnow,
)
from .storage import DuplicateKeyError, InMemoryStorage


logger = logging.getLogger(__name__)


class BalanceRepository:
    """Per-user balance documents. Only the balance engine writes through this."""

    def __init__(self, storage: InMemoryStorage):
        self.collection = storage.balances

    def get(self, user_id: str) -> Optional[Balance]:
        doc = self.collection.find_one({"user_id": user_id})
        return Balance(**doc) if doc else None

    def get_or_create(self, user_id: str) -> Balance:
        existing = self.get(user_id)
        if existing:
            return existing
        try:
            doc = self.collection.insert_one(Balance(user_id=user_id).model_dump())
        except DuplicateKeyError:
            # Created concurrently
            return self.get(user_id)
        logger.info("Created balance", extra={"user_id": user_id})
        return Balance(**doc)

    def increment(
        self,
        user_id: str,
        deltas: dict[Bucket | str, Decimal],
        guard: Optional[dict[Bucket | str, Decimal]] = None,
    ) -> Optional[Balance]:
        """
        Atomically add ``deltas`` to the balance fields.

        ``guard`` maps a field to the minimum value it must hold for the update
        to apply. Returns None when the guard does not hold.
        """
        self.get_or_create(user_id)
        filter: dict = {"user_id": user_id}
        for field, minimum in (guard or {}).items():
            filter[_field(field)] = {"$gte": minimum}
        now = utcnow()
        update = {
            "$inc": {**{_field(f): d for f, d in deltas.items()}, "version": 1},
            "$set": {"updated_at": now},
        }
        doc = self.collection.update_one(filter, update)
        return Balance(**doc) if doc else None

    def replace(self, balance: Balance, expected_version: Optional[int]) -> Balance:
        """Overwrite a balance if nobody wrote it since ``expected_version`` was read."""
        data = balance.model_dump()
        if expected_version is None:
            data["version"] = 1
            try:
                return Balance(**self.collection.insert_one(data))
            except DuplicateKeyError as e:
                raise PersistenceConflict(f"Balance for {balance.user_id} was created concurrently") from e
        data["version"] = expected_version + 1
        doc = self.collection.replace_one({"user_id": balance.user_id, "version": expected_version}, data)
        if doc is None:
            raise PersistenceConflict(f"Balance for {balance.user_id} changed during reconciliation")
        return Balance(**doc)

    def user_ids(self) -> list[str]:
        return self.collection.distinct("user_id")


class EarningRepository:
    def __init__(self, storage: InMemoryStorage):
        self.collection = storage.affiliate_earnings

    def create(self, earning: AffiliateEarning) -> AffiliateEarning:
        return AffiliateEarning(**self.collection.insert_one(earning.model_dump()))

    def find_for_source(self, user_id: str, transaction_id: str, tier: int) -> Optional[AffiliateEarning]:
        doc = self.collection.find_one({"user_id": user_id, "transaction_id": transaction_id, "tier": tier})
        return AffiliateEarning(**doc) if doc else None

    def for_user(self, user_id: str) -> list[AffiliateEarning]:
        return [AffiliateEarning(**d) for d in self.collection.find({"user_id": user_id}, sort=("created_at", False))]

    def pending_before(self, cutoff: datetime, user_id: Optional[str] = None) -> list[AffiliateEarning]:
        filter: dict = {"status": EarningStatus.PENDING, "created_at": {"$lte": cutoff}}
        if user_id is not None:
            filter["user_id"] = user_id
        return [AffiliateEarning(**d) for d in self.collection.find(filter, sort=("created_at", False))]

    def transition(self, earning_id: UUID, from_status: EarningStatus, to_status: EarningStatus) -> Optional[AffiliateEarning]:
        """Compare-and-set the earning status. None if it was not in ``from_status``."""
        doc = self.collection.update_one(
            {"id": earning_id, "status": from_status},
            {"$set": {"status": to_status, "updated_at": utcnow()}},
        )
        return AffiliateEarning(**doc) if doc else None

    def delete(self, earning_id: UUID) -> bool:
        return self.collection.delete_one({"id": earning_id})

    def user_ids(self) -> list[str]:
        return self.collection.distinct("user_id")


class WithdrawalRepository:
    def __init__(self, storage: InMemoryStorage):
        self.collection = storage.withdrawals

    def create(self, withdrawal: Withdrawal) -> Withdrawal:
        return Withdrawal(**self.collection.insert_one(withdrawal.model_dump()))

    def get(self, withdrawal_id: UUID) -> Optional[Withdrawal]:
        doc = self.collection.find_one({"id": withdrawal_id})
        return Withdrawal(**doc) if doc else None

    def transition(self, withdrawal_id: UUID, from_status: WithdrawalStatus, changes: dict) -> Optional[Withdrawal]:
        doc = self.collection.update_one(
            {"id": withdrawal_id, "status": from_status},
            {"$set": {**changes, "updated_at": utcnow()}},
        )
        return Withdrawal(**doc) if doc else None

    def restore(self, withdrawal: Withdrawal) -> None:
        self.collection.replace_one({"id": withdrawal.id}, withdrawal.model_dump())

    def delete(self, withdrawal_id: UUID) -> bool:
        return self.collection.delete_one({"id": withdrawal_id})

    def for_user(self, user_id: str) -> list[Withdrawal]:
        return [Withdrawal(**d) for d in self.collection.find({"user_id": user_id})]

    def page(
        self,
        user_id: Optional[str] = None,
        status: Optional[WithdrawalStatus] = None,
        page: int = 1,
        limit: int = 10,
    ) -> tuple[list[Withdrawal], int]:
        filter: dict = {}
        if user_id is not None:
            filter["user_id"] = user_id
        if status is not None:
            filter["status"] = status
        total = self.collection.count(filter)
        docs = self.collection.find(filter, sort=("created_at", True), skip=(page - 1) * limit, limit=limit)
        return [Withdrawal(**d) for d in docs], total

    def user_ids(self) -> list[str]:
        return self.collection.distinct("user_id")


class KycDirectory(Protocol):
    def get_kyc_status(self, user_id: str) -> Optional[KycStatus]:
        ...


class UserDirectory(Protocol):
    def get_user(self, user_id: str) -> Optional[UserRecord]:
        ...

    def get_referrer(self, user_id: str) -> Optional[UserRecord]:
        ...

    def list_user_ids(self) -> list[str]:
        ...


class InMemoryKycDirectory:
    def __init__(self, storage: InMemoryStorage):
        self.collection = storage.kyc

    def set_status(self, user_id: str, status: KycStatus, rejection_reason: Optional[str] = None) -> KycRecord:
        record = KycRecord(
            user_id=user_id,
            status=status,
            rejection_reason=rejection_reason,
            verified_at=utcnow() if status == KycStatus.APPROVED else None,
        )
        doc = self.collection.update_one(
            {"user_id": user_id}, {"$set": record.model_dump()}, upsert=True
        )
        return KycRecord(**doc)

    def get_kyc_status(self, user_id: str) -> Optional[KycStatus]:
        doc = self.collection.find_one({"user_id": user_id})
        return KycStatus(doc["status"]) if doc else None


class InMemoryUserDirectory:
    def __init__(self, storage: InMemoryStorage):
        self.collection = storage.users

    def add_user(self, user_id: str, name: Optional[str] = None, email: Optional[str] = None,
                 referred_by: Optional[str] = None) -> UserRecord:
        record = UserRecord(id=user_id, name=name, email=email, referred_by=referred_by)
        self.collection.insert_one(record.model_dump())
        return record

    def get_user(self, user_id: str) -> Optional[UserRecord]:
        doc = self.collection.find_one({"id": user_id})
        return UserRecord(**doc) if doc else None

    def get_referrer(self, user_id: str) -> Optional[UserRecord]:
        user = self.get_user(user_id)
        if not user or not user.referred_by:
            return None
        return self.get_user(user.referred_by)

    def list_user_ids(self) -> list[str]:
        return self.collection.distinct("id")


@dataclass
class Repositories:
    balances: BalanceRepository
    earnings: EarningRepository
    withdrawals: WithdrawalRepository
    users: UserDirectory
    kyc: KycDirectory


def build_repositories(storage: InMemoryStorage) -> Repositories:
    return Repositories(
        balances=BalanceRepository(storage),
        earnings=EarningRepository(storage),
        withdrawals=WithdrawalRepository(storage),
        users=InMemoryUserDirectory(storage),
        kyc=InMemoryKycDirectory(storage),
    )


def _field(field: Bucket | str) -> str:
    return field.value if isinstance(field, Bucket) else field
