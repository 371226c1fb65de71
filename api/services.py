from dataclasses import dataclass
from datetime import timedelta
from typing import Callable, Optional

import structlog

from core.config import Settings, get_settings
from core.errors import UserNotFound
from core.money import MoneyContext
from core.storage import InMemoryStorage, utc_now
from ledger.idempotency import IdempotencyGuard
from ledger.service import RewardService
from ledger.store import LedgerStore
from ledger.users import UserDirectory
from rules.dispatch import ActionDispatcher
from rules.rule_engine import RuleEngine
from rules.store import RuleStore

logger = structlog.get_logger(__name__)


@dataclass
class Services:
    settings: Settings
    storage: InMemoryStorage
    money: MoneyContext
    users: UserDirectory
    ledger: LedgerStore
    guard: IdempotencyGuard
    rewards: RewardService
    rules: RuleStore
    engine: RuleEngine
    dispatcher: ActionDispatcher


def build_services(
    settings: Optional[Settings] = None,
    storage: Optional[InMemoryStorage] = None,
    clock: Callable = utc_now,
) -> Services:
    settings = settings or get_settings()
    storage = storage or InMemoryStorage()
    money = MoneyContext.from_settings(settings)

    ledger = LedgerStore(
        storage,
        money=money,
        clock=clock,
        default_currency=settings.default_currency,
        page_limit_max=settings.ledger_page_limit_max,
    )
    guard = IdempotencyGuard(
        storage, money=money, ttl=timedelta(hours=settings.idempotency_ttl_hours), clock=clock,
    )
    rewards = RewardService(
        storage, ledger, guard, money=money, clock=clock, default_currency=settings.default_currency,
    )
    rules = RuleStore(storage, clock=clock)

    return Services(
        settings=settings,
        storage=storage,
        money=money,
        users=UserDirectory(storage, clock=clock),
        ledger=ledger,
        guard=guard,
        rewards=rewards,
        rules=rules,
        engine=RuleEngine(rules),
        dispatcher=ActionDispatcher(rewards),
    )


DEMO_USERS = (
    ("referrer@example.com", "John Referrer"),
    ("referred@example.com", "Jane Referred"),
    ("admin@example.com", "Admin"),
)

DEMO_RULE_NAME = "Referral Reward Rule"


def seed_demo_data(services: Services) -> dict:
    """Create the demo users and the sample referral rule if missing."""
    users = []
    for email, name in DEMO_USERS:
        try:
            users.append(services.users.get_by_email(email))
        except UserNotFound:
            users.append(services.users.create(email, name))

    rule = services.rules.find_latest(DEMO_RULE_NAME)
    if rule is None:
        rule = services.rules.create(
            name=DEMO_RULE_NAME,
            description="Award INR 500 voucher when referrer is paid and referred subscribes",
            conditions={
                "operator": "AND",
                "operands": [
                    {"field": "referrer.status", "op": "=", "value": "PAID"},
                    {"field": "referred.action", "op": "=", "value": "SUBSCRIBED"},
                ],
            },
            actions=[
                {"type": "createReward", "params": {"amount": 500, "currency": "INR", "type": "referral_bonus"}},
                {"type": "issueVoucher", "params": {"code": "REFERRAL500", "value": 500, "currency": "INR", "validDays": 30}},
            ],
            metadata={"category": "referral", "priority": "high"},
        )

    logger.info("demo_data_seeded", users=len(users), rule_id=str(rule.id))
    return {"users": users, "rule": rule}
