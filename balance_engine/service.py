import logging
import math
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta
from decimal import Decimal, InvalidOperation
from functools import partial
from typing import Iterable, Optional, Union
from uuid import UUID, uuid4

from .audit import TransactionLedger
from .commission import compute_commissions, to_money
from .config import Settings, get_settings
from .exceptions import (
    BalanceEngineError,
    BelowMinimum,
    DuplicateOperation,
    InsufficientBalance,
    InvalidState,
    KycNotApproved,
    LedgerInvariantError,
    PersistenceConflict,
    ReferrerMissing,
    ValidationError,
    WithdrawalNotFound,
)
from .execution import ExecutionStrategy, UnitOfWork, select_execution
from .models import (
    ZERO,
    AccountDetails,
    BackfillResponse,
    AffiliateEarning,
    Balance,
    BalanceSummary,
    BalanceTransaction,
    Bucket,
    CommissionResult,
    EarningStatus,
    EntryCategory,
    EntryStatus,
    EntryType,
    KycStatus,
    MaturationResult,
    PurchaseApproval,
    SyncResponse,
    SyncResult,
    TransactionPage,
    Withdrawal,
    WithdrawalAction,
    WithdrawalMethod,
    WithdrawalPage,
    WithdrawalStatus,
    utcnow,
)
from .repositories import Repositories, build_repositories
from .storage import DuplicateKeyError, InMemoryStorage
from .withdrawals import INITIAL_STATUS, next_status, validate_account_details


logger = logging.getLogger(__name__)

Amount = Union[Decimal, int, float, str]


class BalanceEngine:
    """
    Single authority for balance mutations.

    Every bucket change is an atomic increment issued to the store, grouped
    with its audit entry (and earning or withdrawal document) in one unit of
    work run by the configured execution strategy.
    """

    def __init__(
        self,
        repositories: Repositories,
        ledger: TransactionLedger,
        execution: ExecutionStrategy,
        settings: Optional[Settings] = None,
    ):
        self.settings = settings or get_settings()
        self.balances = repositories.balances
        self.earnings = repositories.earnings
        self.withdrawals = repositories.withdrawals
        self.users = repositories.users
        self.kyc = repositories.kyc
        self.ledger = ledger
        self.execution = execution

    # ------------------------------------------------------------------
    # Commissions
    # ------------------------------------------------------------------

    def credit_commission(
        self,
        user_id: str,
        amount: Amount,
        tier: int,
        source_transaction_id: str,
        metadata: Optional[dict] = None,
        referred_user_id: Optional[str] = None,
    ) -> Optional[BalanceTransaction]:
        """
        Credit a referral commission to the user's pending bucket.

        Returns the commission entry, the already existing one when this
        purchase was credited before, or None when the user does not exist.
        """
        try:
            entry, _ = self._credit_commission(
                user_id, amount, tier, source_transaction_id, metadata, referred_user_id
            )
        except ReferrerMissing:
            return None
        return entry

    def _credit_commission(
        self,
        user_id: str,
        amount: Amount,
        tier: int,
        source_transaction_id: str,
        metadata: Optional[dict],
        referred_user_id: Optional[str],
    ) -> tuple[BalanceTransaction, bool]:
        amount = self._parse_amount(amount)
        if tier not in (1, 2):
            raise ValidationError(f"Unsupported commission tier {tier}")
        if not source_transaction_id:
            raise ValidationError("A source transaction id is required")

        if self.users.get_user(user_id) is None:
            logger.warning(
                "Referrer not found, commission skipped",
                extra={"user_id": user_id, "source_transaction_id": source_transaction_id, "tier": tier},
            )
            raise ReferrerMissing(f"Referrer {user_id} not found")

        existing = self.ledger.find_commission(user_id, source_transaction_id, tier)
        if existing:
            logger.info(
                "Commission already credited",
                extra={"user_id": user_id, "source_transaction_id": source_transaction_id, "tier": tier},
            )
            return existing, False

        try:
            entry = self.execution.run(partial(
                self._apply_commission,
                user_id=user_id,
                amount=amount,
                tier=tier,
                source_transaction_id=source_transaction_id,
                metadata=metadata or {},
                referred_user_id=referred_user_id,
            ))
        except DuplicateOperation:
            # Lost the race against a concurrent retry of the same purchase
            logger.info(
                "Concurrent commission credit detected, treating as no-op",
                extra={"user_id": user_id, "source_transaction_id": source_transaction_id, "tier": tier},
            )
            existing = self.ledger.find_commission(user_id, source_transaction_id, tier)
            if existing is None:
                raise InvalidState(
                    f"Earning for user {user_id} and transaction {source_transaction_id} "
                    f"tier {tier} exists without a commission entry"
                )
            return existing, False

        logger.info(
            "Commission credited",
            extra={"user_id": user_id, "amount": str(amount), "tier": tier,
                   "source_transaction_id": source_transaction_id},
        )
        return entry, True

    def _apply_commission(
        self,
        uow: UnitOfWork,
        user_id: str,
        amount: Decimal,
        tier: int,
        source_transaction_id: str,
        metadata: dict,
        referred_user_id: Optional[str],
    ) -> BalanceTransaction:
        now = utcnow()
        before = self.balances.get_or_create(user_id)
        label = "Direct" if tier == 1 else "Second-tier"
        description = f"{label} referral commission from {metadata.get('package_title') or 'package purchase'}"

        # The audit insert carries the uniqueness constraint, so it goes first
        entry = self.ledger.append(BalanceTransaction(
            id=uuid4(),
            user_id=user_id,
            type=EntryType.CREDIT,
            status=EntryStatus.COMPLETED,
            category=EntryCategory.COMMISSION,
            amount=amount,
            description=description,
            related_transaction_id=source_transaction_id,
            tier=tier,
            balance_before=before.pending,
            balance_after=before.pending + amount,
            metadata={"tier": tier, **metadata},
            created_at=now,
        ))
        uow.on_rollback("remove commission entry", partial(self.ledger.remove, entry.id))

        updated = self.balances.increment(user_id, {Bucket.PENDING: amount, "total_earnings": amount})
        uow.on_rollback(
            "reverse commission credit",
            partial(self.balances.increment, user_id, {Bucket.PENDING: -amount, "total_earnings": -amount}),
        )
        self._verify(updated)

        try:
            earning = self.earnings.create(AffiliateEarning(
                id=uuid4(),
                user_id=user_id,
                referred_user_id=referred_user_id,
                transaction_id=source_transaction_id,
                amount=amount,
                tier=tier,
                status=EarningStatus.PENDING,
                description=description,
                created_at=now,
                updated_at=now,
            ))
        except DuplicateKeyError as e:
            raise DuplicateOperation(
                f"Earning already recorded for user {user_id} and transaction {source_transaction_id}"
            ) from e
        uow.on_rollback("delete affiliate earning", partial(self.earnings.delete, earning.id))
        return entry

    def process_purchase_approval(self, event: PurchaseApproval) -> list[CommissionResult]:
        """
        Credit both commission tiers for an approved purchase.

        Never raises: a failed credit is logged and reported in the results so
        the approval itself stands and ``backfill_commissions`` can repair it.
        """
        split = compute_commissions(
            event.amount, self.settings.TIER1_COMMISSION_RATE, self.settings.TIER2_COMMISSION_RATE
        )
        results = []

        tier1_amount = event.tier1_commission if event.tier1_commission is not None else split.tier1
        if event.referrer_id and tier1_amount > 0:
            results.append(self._safe_credit(event, 1, event.referrer_id, tier1_amount,
                                             self.settings.TIER1_COMMISSION_RATE))

        tier2_user = event.tier2_referrer_id
        if tier2_user is None and event.referrer_id:
            upline = self.users.get_referrer(event.referrer_id)
            tier2_user = upline.id if upline else None
        tier2_amount = event.tier2_commission if event.tier2_commission is not None else split.tier2
        if tier2_user and tier2_amount > 0:
            results.append(self._safe_credit(event, 2, tier2_user, tier2_amount,
                                             self.settings.TIER2_COMMISSION_RATE))

        return results

    def backfill_commissions(self, events: Iterable[PurchaseApproval]) -> BackfillResponse:
        """
        Replay approved purchases so that any commission missing from the ledger is credited.

        Purchases credited before come back as duplicates, so the sweep can be
        run over the full approval history as often as needed.
        """
        results = []
        purchases = 0
        for event in events:
            purchases += 1
            results.extend(self.process_purchase_approval(event))

        response = BackfillResponse(
            purchases=purchases,
            credited=sum(1 for r in results if r.success and not r.duplicate),
            duplicates=sum(1 for r in results if r.duplicate),
            failed=sum(1 for r in results if not r.success),
            results=results,
        )
        logger.info(
            "Commission backfill finished",
            extra={"purchases": purchases, "credited": response.credited, "failed": response.failed},
        )
        return response

    def _safe_credit(self, event: PurchaseApproval, tier: int, user_id: str,
                     amount: Decimal, rate: Decimal) -> CommissionResult:
        metadata = {
            "package_id": event.package_id,
            "package_title": event.package_title,
            "customer_id": event.buyer_id,
            "commission_rate": str(rate * 100),
        }
        try:
            entry, created = self._credit_commission(
                user_id, amount, tier, event.id, metadata, event.buyer_id
            )
        except ReferrerMissing:
            return CommissionResult(tier=tier, user_id=user_id, amount=amount, success=False,
                                    error="Referrer not found")
        except Exception as e:
            logger.exception(
                "Commission credit failed",
                extra={"user_id": user_id, "tier": tier, "source_transaction_id": event.id},
            )
            return CommissionResult(tier=tier, user_id=user_id, amount=amount, success=False, error=str(e))

        return CommissionResult(tier=tier, user_id=user_id, amount=entry.amount, success=True,
                                duplicate=not created, entry_id=entry.id)

    # ------------------------------------------------------------------
    # Maturation
    # ------------------------------------------------------------------

    def mature_pending(
        self,
        user_id: Optional[str] = None,
        now: Optional[datetime] = None,
        holding_days: Optional[int] = None,
    ) -> list[MaturationResult]:
        """Move commissions older than the holding period from pending to available."""
        now = now or utcnow()
        days = self.settings.HOLDING_PERIOD_DAYS if holding_days is None else holding_days
        cutoff = now - timedelta(days=days)

        by_user: dict[str, list[AffiliateEarning]] = {}
        for earning in self.earnings.pending_before(cutoff, user_id):
            by_user.setdefault(earning.user_id, []).append(earning)

        results = []
        for uid, earnings in by_user.items():
            try:
                results.append(self.execution.run(partial(
                    self._mature_user, user_id=uid, earnings=earnings, holding_days=days
                )))
            except BalanceEngineError as e:
                logger.error("Maturation failed", extra={"user_id": uid, "error": str(e)})
                results.append(MaturationResult(user_id=uid, amount=ZERO, earnings=0, success=False, error=str(e)))
        return results

    def release_all_pending(self, user_id: Optional[str] = None, now: Optional[datetime] = None) -> list[MaturationResult]:
        """Administrative override: make every pending commission available now."""
        logger.warning("Releasing pending commissions without holding period", extra={"user_id": user_id})
        return self.mature_pending(user_id=user_id, now=now, holding_days=0)

    def process_pending_commissions(self, now: Optional[datetime] = None) -> int:
        results = self.mature_pending(now=now)
        processed = sum(r.earnings for r in results if r.success)
        logger.info("Processed pending commissions", extra={"processed": processed, "users": len(results)})
        return processed

    def _mature_user(self, uow: UnitOfWork, user_id: str, earnings: list[AffiliateEarning],
                     holding_days: int) -> MaturationResult:
        moved = ZERO
        earning_ids = []
        for earning in earnings:
            flipped = self.earnings.transition(earning.id, EarningStatus.PENDING, EarningStatus.AVAILABLE)
            if flipped is None:
                # Matured by a concurrent sweep
                continue
            uow.on_rollback(
                "return earning to pending",
                partial(self.earnings.transition, earning.id, EarningStatus.AVAILABLE, EarningStatus.PENDING),
            )
            moved += flipped.amount
            earning_ids.append(str(earning.id))

        if not earning_ids:
            return MaturationResult(user_id=user_id, amount=ZERO, earnings=0)

        updated, applied = self._move(uow, user_id, Bucket.PENDING, Bucket.AVAILABLE, moved)
        entry = self.ledger.append(BalanceTransaction(
            id=uuid4(),
            user_id=user_id,
            type=EntryType.TRANSFER,
            status=EntryStatus.COMPLETED,
            category=EntryCategory.MATURATION,
            amount=applied,
            description="Commission moved from pending to available",
            balance_before=updated.available - applied,
            balance_after=updated.available,
            metadata={
                "earning_ids": earning_ids,
                "holding_period_days": holding_days,
                "operation": "mature-pending",
            },
            created_at=utcnow(),
        ))
        uow.on_rollback("remove maturation entry", partial(self.ledger.remove, entry.id))
        logger.info("Pending commissions matured",
                    extra={"user_id": user_id, "amount": str(applied), "earnings": len(earning_ids)})
        return MaturationResult(user_id=user_id, amount=applied, earnings=len(earning_ids))

    # ------------------------------------------------------------------
    # Withdrawals
    # ------------------------------------------------------------------

    def request_withdrawal(
        self,
        user_id: str,
        amount: Amount,
        method: Union[WithdrawalMethod, str],
        account_details: Union[AccountDetails, dict, None] = None,
    ) -> Withdrawal:
        amount = self._parse_amount(amount)
        try:
            method = WithdrawalMethod(method)
        except ValueError:
            raise ValidationError(f"Unsupported withdrawal method {method!r}")
        if isinstance(account_details, dict):
            account_details = AccountDetails(**account_details)
        details = account_details or AccountDetails()

        if amount < self.settings.MIN_WITHDRAWAL_AMOUNT:
            raise BelowMinimum(amount, self.settings.MIN_WITHDRAWAL_AMOUNT, self.settings.CURRENCY)
        validate_account_details(method, details)

        kyc_status = self.kyc.get_kyc_status(user_id)
        if kyc_status != KycStatus.APPROVED:
            logger.warning("Withdrawal refused, KYC not approved",
                           extra={"user_id": user_id, "kyc_status": kyc_status.value if kyc_status else None})
            raise KycNotApproved(kyc_status.value if kyc_status else None)

        balance = self.balances.get_or_create(user_id)
        if balance.available < amount:
            raise InsufficientBalance(amount, balance.available)

        withdrawal = self.execution.run(partial(
            self._open_withdrawal, user_id=user_id, amount=amount, method=method, details=details
        ))
        logger.info("Withdrawal requested",
                    extra={"user_id": user_id, "withdrawal_id": str(withdrawal.id), "amount": str(amount)})
        return withdrawal

    def _open_withdrawal(self, uow: UnitOfWork, user_id: str, amount: Decimal,
                         method: WithdrawalMethod, details: AccountDetails) -> Withdrawal:
        now = utcnow()
        withdrawal = self.withdrawals.create(Withdrawal(
            id=uuid4(),
            user_id=user_id,
            amount=amount,
            method=method,
            account_details=details,
            status=INITIAL_STATUS,
            created_at=now,
            updated_at=now,
        ))
        uow.on_rollback("delete withdrawal", partial(self.withdrawals.delete, withdrawal.id))

        updated = self.balances.increment(
            user_id,
            {Bucket.AVAILABLE: -amount, Bucket.PROCESSING: amount},
            guard={Bucket.AVAILABLE: amount},
        )
        if updated is None:
            current = self.balances.get_or_create(user_id)
            raise InsufficientBalance(amount, current.available)
        uow.on_rollback(
            "release withdrawal reservation",
            partial(self.balances.increment, user_id, {Bucket.AVAILABLE: amount, Bucket.PROCESSING: -amount}),
        )
        self._verify(updated)

        entry = self.ledger.append(BalanceTransaction(
            id=uuid4(),
            user_id=user_id,
            type=EntryType.DEBIT,
            status=EntryStatus.PENDING,
            category=EntryCategory.WITHDRAWAL,
            amount=amount,
            description="Withdrawal request submitted",
            withdrawal_id=withdrawal.id,
            balance_before=updated.available + amount,
            balance_after=updated.available,
            metadata={"withdrawal_id": str(withdrawal.id), "method": method.value},
            created_at=now,
        ))
        uow.on_rollback("remove withdrawal debit", partial(self.ledger.remove, entry.id))
        return withdrawal

    def resolve_withdrawal(
        self,
        withdrawal_id: UUID,
        action: Union[WithdrawalAction, str],
        approver_id: str,
        external_txn_id: Optional[str] = None,
        rejection_reason: Optional[str] = None,
    ) -> Withdrawal:
        try:
            action = WithdrawalAction(action)
        except ValueError:
            raise ValidationError(f"Invalid action {action!r}")

        withdrawal = self.get_withdrawal(withdrawal_id)
        target = next_status(withdrawal.status, action)

        if not approver_id:
            raise ValidationError("An approver is required")
        if action == WithdrawalAction.APPROVE and not external_txn_id:
            raise ValidationError("Transaction ID is required for approval")
        if action == WithdrawalAction.REJECT and not rejection_reason:
            raise ValidationError("Rejection reason is required")

        resolved = self.execution.run(partial(
            self._resolve,
            withdrawal=withdrawal,
            action=action,
            target=target,
            approver_id=approver_id,
            external_txn_id=external_txn_id,
            rejection_reason=rejection_reason,
        ))
        logger.info("Withdrawal resolved",
                    extra={"withdrawal_id": str(withdrawal.id), "status": resolved.status.value,
                           "processed_by": approver_id})
        return resolved

    def _resolve(self, uow: UnitOfWork, withdrawal: Withdrawal, action: WithdrawalAction,
                 target: WithdrawalStatus, approver_id: str, external_txn_id: Optional[str],
                 rejection_reason: Optional[str]) -> Withdrawal:
        now = utcnow()
        changes: dict = {"status": target, "processed_at": now, "processed_by": approver_id}
        if action == WithdrawalAction.APPROVE:
            changes["transaction_id"] = external_txn_id
        else:
            changes["rejection_reason"] = rejection_reason

        resolved = self.withdrawals.transition(withdrawal.id, WithdrawalStatus.PENDING, changes)
        if resolved is None:
            current = self.get_withdrawal(withdrawal.id)
            raise InvalidState(f"Withdrawal is already {current.status.value}")
        uow.on_rollback("reopen withdrawal", partial(self.withdrawals.restore, withdrawal))

        user_id = withdrawal.user_id
        if action == WithdrawalAction.APPROVE:
            updated, _ = self._move(uow, user_id, Bucket.PROCESSING, Bucket.WITHDRAWN, withdrawal.amount)
            debit = self.ledger.mark_withdrawal_debit(
                withdrawal.id, EntryStatus.COMPLETED, "Withdrawal completed successfully"
            )
        else:
            updated, applied = self._move(uow, user_id, Bucket.PROCESSING, Bucket.AVAILABLE, withdrawal.amount)
            debit = self.ledger.mark_withdrawal_debit(
                withdrawal.id, EntryStatus.CANCELLED, f"Withdrawal rejected: {rejection_reason}"
            )
            if applied > 0:
                reversal = self.ledger.append(BalanceTransaction(
                    id=uuid4(),
                    user_id=user_id,
                    type=EntryType.CREDIT,
                    status=EntryStatus.COMPLETED,
                    category=EntryCategory.WITHDRAWAL_REVERSAL,
                    amount=applied,
                    description="Rejected withdrawal returned to available balance",
                    withdrawal_id=withdrawal.id,
                    balance_before=updated.available - applied,
                    balance_after=updated.available,
                    metadata={"withdrawal_id": str(withdrawal.id), "rejection_reason": rejection_reason},
                    created_at=now,
                ))
                uow.on_rollback("remove withdrawal reversal", partial(self.ledger.remove, reversal.id))

        if debit is None:
            logger.warning("No pending debit entry for withdrawal", extra={"withdrawal_id": str(withdrawal.id)})
        else:
            uow.on_rollback("reopen withdrawal debit", partial(self.ledger.reopen_withdrawal_debit, withdrawal.id))
        return resolved

    def get_withdrawal(self, withdrawal_id: UUID) -> Withdrawal:
        withdrawal = self.withdrawals.get(withdrawal_id)
        if not withdrawal:
            raise WithdrawalNotFound(f"Withdrawal {withdrawal_id} not found")
        return withdrawal

    def list_withdrawals(
        self,
        user_id: Optional[str] = None,
        status: Optional[WithdrawalStatus] = None,
        page: int = 1,
        limit: int = 10,
    ) -> WithdrawalPage:
        page = max(page, 1)
        limit = max(limit, 1)
        withdrawals, total = self.withdrawals.page(user_id, status, page, limit)
        return WithdrawalPage(
            withdrawals=withdrawals,
            total=total,
            page=page,
            limit=limit,
            pages=math.ceil(total / limit) if total else 0,
        )

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------

    def compute_balance(self, user_id: str) -> Balance:
        """Derive a user's buckets from earning and withdrawal history alone."""
        earnings = self.earnings.for_user(user_id)
        withdrawals = self.withdrawals.for_user(user_id)

        total = sum((e.amount for e in earnings if e.status != EarningStatus.CANCELLED), ZERO)
        pending = sum((e.amount for e in earnings if e.status == EarningStatus.PENDING), ZERO)
        processing = sum(
            (w.amount for w in withdrawals if w.status in (WithdrawalStatus.PENDING, WithdrawalStatus.PROCESSING)),
            ZERO,
        )
        withdrawn = sum((w.amount for w in withdrawals if w.status == WithdrawalStatus.COMPLETED), ZERO)
        available = total - pending - processing - withdrawn

        if available < 0:
            logger.error(
                "History pays out more than was earned",
                extra={"user_id": user_id, "total": str(total), "shortfall": str(-available)},
            )
            available = ZERO
            total = pending + processing + withdrawn

        return Balance(
            user_id=user_id,
            available=available,
            pending=pending,
            processing=processing,
            withdrawn=withdrawn,
            total_earnings=total,
        )

    def reconcile(self, user_id: str) -> SyncResult:
        """Overwrite the stored balance with the one derived from history."""
        attempts = self.settings.RECONCILE_MAX_ATTEMPTS
        for attempt in range(1, attempts + 1):
            try:
                return self._reconcile_once(user_id)
            except PersistenceConflict:
                logger.warning("Balance changed during reconciliation, retrying",
                               extra={"user_id": user_id, "attempt": attempt})
                if attempt == attempts:
                    raise
        raise PersistenceConflict(f"Could not reconcile balance for {user_id}")

    def _reconcile_once(self, user_id: str) -> SyncResult:
        current = self.balances.get(user_id)
        computed = self.compute_balance(user_id)
        if current is not None and _same_buckets(current, computed):
            return SyncResult(user_id=user_id, success=True, changed=False, balance=current)

        stored = self.execution.run(partial(self._store_reconciled, current=current, computed=computed))
        # A commission whose increment landed before the read but whose earning
        # was inserted after it leaves history ahead of the stored balance
        if not _same_buckets(self.compute_balance(user_id), stored):
            raise PersistenceConflict(f"History of user {user_id} changed during reconciliation")
        logger.info(
            "Balance reconciled",
            extra={"user_id": user_id, "available": str(stored.available), "pending": str(stored.pending),
                   "processing": str(stored.processing), "withdrawn": str(stored.withdrawn)},
        )
        return SyncResult(user_id=user_id, success=True, changed=True, balance=stored)

    def _store_reconciled(self, uow: UnitOfWork, current: Optional[Balance], computed: Balance) -> Balance:
        now = utcnow()
        replacement = computed.model_copy(update={
            "last_synced_at": now,
            "created_at": current.created_at if current else now,
            "updated_at": now,
        })
        stored = self.balances.replace(replacement, current.version if current else None)
        if current is not None:
            uow.on_rollback("restore previous balance", partial(self.balances.replace, current, stored.version))

        previous = None
        if current is not None:
            previous = {b.value: str(getattr(current, b.value)) for b in Bucket}
            previous["total_earnings"] = str(current.total_earnings)
        entry = self.ledger.append(BalanceTransaction(
            id=uuid4(),
            user_id=computed.user_id,
            type=EntryType.SYNC,
            status=EntryStatus.COMPLETED,
            category=EntryCategory.SYNC,
            amount=ZERO,
            description="Balance synced with earnings and withdrawals",
            metadata={"previous_balance": previous, "operation": "reconcile"},
            created_at=now,
        ))
        uow.on_rollback("remove sync entry", partial(self.ledger.remove, entry.id))
        return stored

    def sync_balances(self, user_id: Optional[str] = None) -> SyncResponse:
        """Reconcile one user, or every known user with a bounded worker pool."""
        user_ids = [user_id] if user_id else self.known_user_ids()
        if not user_ids:
            return SyncResponse(synced=0, results=[])

        workers = min(self.settings.SYNC_MAX_WORKERS, len(user_ids))
        results = []
        with ThreadPoolExecutor(max_workers=workers) as pool:
            futures = [(uid, pool.submit(self.reconcile, uid)) for uid in user_ids]
            for uid, future in futures:
                try:
                    results.append(future.result())
                except Exception as e:
                    logger.exception("Balance sync failed", extra={"user_id": uid})
                    results.append(SyncResult(user_id=uid, success=False, error=str(e)))

        synced = sum(1 for r in results if r.success)
        logger.info("Balance sync finished", extra={"synced": synced, "users": len(user_ids)})
        return SyncResponse(synced=synced, results=results)

    def known_user_ids(self) -> list[str]:
        ids = set(self.users.list_user_ids())
        ids.update(self.balances.user_ids())
        ids.update(self.earnings.user_ids())
        ids.update(self.withdrawals.user_ids())
        return sorted(ids)

    # ------------------------------------------------------------------
    # Read side
    # ------------------------------------------------------------------

    def get_balance(self, user_id: str) -> Balance:
        return self.balances.get_or_create(user_id)

    def get_balance_summary(self, user_id: str) -> BalanceSummary:
        balance = self.balances.get_or_create(user_id)
        return BalanceSummary(
            user_id=user_id,
            currency=self.settings.CURRENCY,
            available=balance.available,
            pending=balance.pending,
            processing=balance.processing,
            withdrawn=balance.withdrawn,
            total=balance.total_earnings,
            last_synced_at=balance.last_synced_at,
            recent_transactions=self.ledger.recent(user_id, self.settings.RECENT_TRANSACTIONS_LIMIT),
        )

    def get_transaction_history(
        self,
        user_id: str,
        type: Optional[EntryType] = None,
        category: Optional[EntryCategory] = None,
        status: Optional[EntryStatus] = None,
        page: int = 1,
        limit: int = 20,
    ) -> TransactionPage:
        return self.ledger.query(user_id, type=type, category=category, status=status, page=page, limit=limit)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _move(self, uow: UnitOfWork, user_id: str, source: Bucket, target: Bucket,
              amount: Decimal) -> tuple[Balance, Decimal]:
        """Atomically move ``amount`` between buckets, never driving ``source`` negative."""
        updated = self.balances.increment(user_id, {source: -amount, target: amount}, guard={source: amount})
        applied = amount
        if updated is None:
            updated, applied = self._move_shortfall(user_id, source, target, amount)
        if applied > 0:
            uow.on_rollback(
                f"reverse {source.value} to {target.value} move",
                partial(self.balances.increment, user_id, {source: applied, target: -applied}),
            )
        self._verify(updated)
        return updated, applied

    def _move_shortfall(self, user_id: str, source: Bucket, target: Bucket,
                        amount: Decimal) -> tuple[Balance, Decimal]:
        for _ in range(self.settings.RECONCILE_MAX_ATTEMPTS):
            current = self.balances.get_or_create(user_id)
            held = getattr(current, source.value)
            message = f"{source.value} balance of user {user_id} is {held}, cannot move {amount} to {target.value}"
            if self.settings.strict_invariants:
                logger.error(message)
                raise LedgerInvariantError(message)

            logger.error(f"Clamping bucket move: {message}",
                         extra={"user_id": user_id, "requested": str(amount), "held": str(held)})
            if held <= 0:
                return current, ZERO
            updated = self.balances.increment(user_id, {source: -held, target: held}, guard={source: held})
            if updated is not None:
                return updated, held
        raise PersistenceConflict(f"{source.value} balance of user {user_id} kept changing")

    def _verify(self, balance: Optional[Balance]) -> None:
        if balance is None or balance.is_consistent():
            return
        message = (
            f"Balance of user {balance.user_id} is inconsistent: available={balance.available} "
            f"pending={balance.pending} processing={balance.processing} withdrawn={balance.withdrawn} "
            f"total={balance.total_earnings}"
        )
        logger.error(message)
        if self.settings.strict_invariants:
            raise LedgerInvariantError(message)

    def _parse_amount(self, value: Amount) -> Decimal:
        try:
            amount = Decimal(str(value))
        except (InvalidOperation, ValueError):
            raise ValidationError(f"Invalid amount {value!r}")
        if not amount.is_finite():
            raise ValidationError(f"Invalid amount {value!r}")
        amount = to_money(amount)
        # Checked after rounding so sub-unit amounts cannot become 0.00 credits
        if amount <= 0:
            raise ValidationError(f"Amount must be at least 0.01, got {value!r}")
        return amount


def _same_buckets(a: Balance, b: Balance) -> bool:
    return all(
        getattr(a, field) == getattr(b, field)
        for field in ("available", "pending", "processing", "withdrawn", "total_earnings")
    )


def create_engine(settings: Optional[Settings] = None, storage: Optional[InMemoryStorage] = None) -> BalanceEngine:
    """Build the engine and its repositories once, at process start."""
    settings = settings or get_settings()
    storage = storage or InMemoryStorage(supports_transactions=settings.SUPPORTS_TRANSACTIONS)
    return BalanceEngine(
        repositories=build_repositories(storage),
        ledger=TransactionLedger(storage),
        execution=select_execution(storage, settings.SUPPORTS_TRANSACTIONS),
        settings=settings,
    )
