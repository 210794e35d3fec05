from datetime import timedelta
from decimal import Decimal
from uuid import uuid4

from balance_engine.config import Settings
from balance_engine.models import AffiliateEarning, EarningStatus, KycStatus, utcnow
from balance_engine.service import create_engine
from balance_engine.storage import InMemoryStorage


# Referral chain: UPLINE referred REFERRER, REFERRER referred BUYER
UPLINE_ID = "affiliate-upline"
REFERRER_ID = "affiliate-direct"
BUYER_ID = "customer-1"
ADMIN_ID = "admin-1"

ESEWA_DETAILS = {"phone_number": "9800000001"}

_seed_counter = {"n": 0}


def make_settings(**overrides) -> Settings:
    values = {"ENVIRONMENT": "development", "CRON_SECRET_TOKEN": "cron-secret"}
    values.update(overrides)
    return Settings(_env_file=None, **values)


def build_engine(transactional: bool = True, **overrides):
    settings = make_settings(SUPPORTS_TRANSACTIONS=transactional, **overrides)
    storage = InMemoryStorage(supports_transactions=transactional)
    engine = create_engine(settings, storage)
    engine.users.add_user(UPLINE_ID, name="Upline Affiliate")
    engine.users.add_user(REFERRER_ID, name="Direct Affiliate", referred_by=UPLINE_ID)
    engine.users.add_user(BUYER_ID, name="Course Buyer", referred_by=REFERRER_ID)
    engine.kyc.set_status(REFERRER_ID, KycStatus.APPROVED)
    return engine, storage


def fund(engine, user_id: str, amount) -> None:
    """Give a user a matured (available) commission of ``amount``."""
    _seed_counter["n"] += 1
    engine.credit_commission(user_id, Decimal(str(amount)), 1, f"seed-purchase-{_seed_counter['n']}")
    engine.mature_pending(user_id, now=utcnow() + timedelta(days=15))


def assert_consistent(balance) -> None:
    for bucket in (balance.available, balance.pending, balance.processing, balance.withdrawn):
        assert bucket >= 0
    assert balance.total_earnings == (
        balance.available + balance.pending + balance.processing + balance.withdrawn
    )


def seed_earning(engine, user_id: str, transaction_id: str, amount, tier: int = 1):
    """Write an earning straight to the store, bypassing the engine and the audit log."""
    now = utcnow()
    return engine.earnings.create(AffiliateEarning(
        id=uuid4(),
        user_id=user_id,
        transaction_id=transaction_id,
        amount=Decimal(str(amount)),
        tier=tier,
        status=EarningStatus.PENDING,
        description="Imported earning",
        created_at=now,
        updated_at=now,
    ))
