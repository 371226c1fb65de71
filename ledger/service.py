from typing import Callable, Optional
from uuid import UUID, uuid4

import structlog
from pydantic_core import PydanticSerializationError, to_jsonable_python

from core.errors import (
    InvalidTransition,
    NoCreditEntry,
    RewardNotFound,
    SelfReferral,
    UserNotFound,
    ValidationError,
)
from core.money import AmountLike, MoneyContext
from core.storage import InMemoryStorage, UniqueViolation, utc_now

from .idempotency import Cached, IdempotencyGuard
from .models import (
    CreditResult,
    EntryType,
    LedgerEntry,
    Reward,
    RewardResult,
    RewardStatus,
)
from .store import LedgerStore

logger = structlog.get_logger(__name__)

TABLE = "rewards"


class RewardService:
    """Reward lifecycle: PENDING -> CONFIRMED -> PAID, or -> REVERSED.

    Each operation that touches more than one record runs in a single
    storage transaction, so a reward status and the ledger entries it
    implies are always written together or not at all.
    """

    def __init__(
        self,
        storage: InMemoryStorage,
        ledger: LedgerStore,
        guard: IdempotencyGuard,
        money: Optional[MoneyContext] = None,
        clock: Callable = utc_now,
        default_currency: str = "INR",
    ):
        self.storage = storage
        self.ledger = ledger
        self.guard = guard
        self.money = money or MoneyContext()
        self.clock = clock
        self.default_currency = default_currency

    def credit(
        self,
        referrer_id: UUID,
        referred_id: UUID,
        amount: AmountLike,
        idempotency_key: str,
        currency: Optional[str] = None,
        metadata: Optional[dict] = None,
    ) -> CreditResult:
        if referrer_id == referred_id:
            raise SelfReferral("Referrer and referred user cannot be the same")
        value = self.money.positive(amount)
        currency = currency or self.default_currency
        metadata = self._json_metadata(metadata)
        fingerprint = self.guard.fingerprint(referrer_id, referred_id, value, currency)

        try:
            return self._credit_once(referrer_id, referred_id, value, currency, idempotency_key, fingerprint, metadata)
        except UniqueViolation:
            # Another writer stored the same key first; its record answers this call.
            logger.info("reward_credit_raced", idempotency_key=idempotency_key)
            return self._credit_once(referrer_id, referred_id, value, currency, idempotency_key, fingerprint, metadata)

    def _credit_once(self, referrer_id, referred_id, value, currency, idempotency_key, fingerprint, metadata) -> CreditResult:
        with self.storage.transaction():
            outcome = self.guard.check_or_reserve(idempotency_key, fingerprint)
            if isinstance(outcome, Cached):
                result = CreditResult.model_validate(outcome.response)
                logger.info("reward_credit_replayed", reward_id=str(result.reward.id), idempotency_key=idempotency_key)
                return result.model_copy(update={"replayed": True})

            for user_id, role in ((referrer_id, "Referrer"), (referred_id, "Referred user")):
                if self.storage.get("users", user_id) is None:
                    raise UserNotFound(f"{role} with ID {user_id} not found")

            reward_row = self.storage.insert(
                TABLE,
                {
                    "id": uuid4(),
                    "idempotency_key": idempotency_key,
                    "referrer_id": referrer_id,
                    "referred_id": referred_id,
                    "status": RewardStatus.PENDING,
                    "amount": value,
                    "currency": currency,
                    "metadata": dict(metadata or {}),
                    "created_at": self.clock(),
                },
            )
            entry = self.ledger.create_credit(
                referrer_id,
                value,
                reward_id=reward_row["id"],
                currency=currency,
                metadata={"reward_type": "referral", "referred_user_id": str(referred_id)},
            )
            result = CreditResult(reward=Reward(**reward_row), ledger_entry=entry)
            self.guard.store(idempotency_key, fingerprint, result.model_dump(mode="json"))

        logger.info(
            "reward_credited",
            reward_id=str(result.reward.id),
            entry_id=str(entry.id),
            referrer_id=str(referrer_id),
            amount=str(value),
            currency=currency,
        )
        return result

    def confirm(self, reward_id: UUID) -> Reward:
        with self.storage.transaction():
            reward = self.get(reward_id)
            self._require_transition(reward, RewardStatus.CONFIRMED)
            row = self.storage.update(TABLE, reward_id, status=RewardStatus.CONFIRMED, confirmed_at=self.clock())
        logger.info("reward_confirmed", reward_id=str(reward_id))
        return Reward(**row)

    def pay(self, reward_id: UUID) -> RewardResult:
        with self.storage.transaction():
            reward = self.get(reward_id)
            self._require_transition(reward, RewardStatus.PAID)
            now = self.clock()
            entry = self.ledger.create_debit(
                reward.referrer_id,
                reward.amount,
                reward_id=reward.id,
                currency=reward.currency,
                metadata={"payout": True, "paid_at": now.isoformat()},
            )
            row = self.storage.update(TABLE, reward_id, status=RewardStatus.PAID, paid_at=now)
        logger.info("reward_paid", reward_id=str(reward_id), entry_id=str(entry.id))
        return RewardResult(reward=Reward(**row), ledger_entry=entry)

    def reverse(self, reward_id: UUID, reason: Optional[str] = None) -> RewardResult:
        with self.storage.transaction():
            reward = self.get(reward_id)
            self._require_transition(reward, RewardStatus.REVERSED)
            credit = self.original_credit(reward_id)
            if credit is None:
                raise NoCreditEntry(f"No credit entry found for reward {reward_id}")
            reversal = self.ledger.reverse_entry(credit.id, reason, reward_id=reward_id)
            row = self.storage.update(
                TABLE,
                reward_id,
                status=RewardStatus.REVERSED,
                reversed_at=self.clock(),
                reversal_reason=reason,
            )
        logger.info("reward_reversed", reward_id=str(reward_id), reversal_id=str(reversal.id), reason=reason)
        return RewardResult(reward=Reward(**row), ledger_entry=reversal)

    def reverse_entry(self, entry_id: UUID, reason: Optional[str] = None) -> LedgerEntry:
        """Reverse a single entry.

        Reversing the original credit of a reward reverses the reward
        itself. Any other entry tagged with a reward is refused.
        """
        with self.storage.transaction():
            entry = self.ledger.get_entry(entry_id)
            if entry.reward_id is not None:
                credit = self.original_credit(entry.reward_id)
                if credit is not None and credit.id == entry_id:
                    return self.reverse(entry.reward_id, reason).ledger_entry
            return self.ledger.reverse_entry(entry_id, reason)

    def get(self, reward_id: UUID) -> Reward:
        row = self.storage.get(TABLE, reward_id)
        if not row:
            raise RewardNotFound(f"Reward {reward_id} not found")
        return Reward(**row)

    def list_all(self, status: Optional[RewardStatus] = None, limit: int = 50) -> list[Reward]:
        rows = self.storage.select(TABLE, lambda r: status is None or r["status"] == status)
        rows.sort(key=lambda r: (r["created_at"], r["_seq"]), reverse=True)
        return [Reward(**r) for r in rows[:limit]]

    def entries_for(self, reward_id: UUID) -> list[LedgerEntry]:
        self.get(reward_id)
        return self.ledger.entries_for_reward(reward_id)

    def original_credit(self, reward_id: UUID) -> Optional[LedgerEntry]:
        """Earliest CREDIT entry tagged with the reward."""
        for entry in self.ledger.entries_for_reward(reward_id):
            if entry.entry_type == EntryType.CREDIT:
                return entry
        return None

    @staticmethod
    def _json_metadata(metadata: Optional[dict]) -> dict:
        # the credit response is cached as JSON, so metadata must survive that
        if metadata is None:
            return {}
        if not isinstance(metadata, dict):
            raise ValidationError("Reward metadata must be an object")
        try:
            to_jsonable_python(metadata)
        except PydanticSerializationError as exc:
            raise ValidationError(f"Reward metadata is not JSON serializable: {exc}") from exc
        return metadata

    @staticmethod
    def _require_transition(reward: Reward, target: RewardStatus) -> None:
        if not reward.can_transition(target):
            raise InvalidTransition(reward.status, target, reward.allowed_transitions())
