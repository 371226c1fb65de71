"""
Append-only ledger of value movements.

Entries are inserted once and never edited or deleted. The single
exception is the POSTED -> VOID status flip performed by reverse_entry,
in the same transaction that inserts the compensating REVERSAL entry.
Balances are always derived from the entries, never stored.
"""

from decimal import Decimal
from typing import Callable, Iterable, Optional
from uuid import UUID, uuid4

import structlog

from core.errors import (
    AlreadyReversed,
    AlreadyVoid,
    EntryNotFound,
    RewardOwnedEntry,
    UserNotFound,
    ValidationError,
)
from core.money import AmountLike, MoneyContext
from core.storage import InMemoryStorage, UniqueViolation, utc_now

from .models import EntryStatus, EntryType, LedgerEntry, LedgerPage, UserBalance

logger = structlog.get_logger(__name__)

TABLE = "ledger_entries"


def fold_balance(entries: Iterable[LedgerEntry], start: Decimal, money: MoneyContext) -> Decimal:
    """Fold entries into a running balance.

    Only POSTED entries count: CREDIT adds, DEBIT subtracts. REVERSAL
    entries add nothing themselves, their effect is the VOID status of the
    entry they reverse. Folding a prefix and then the rest of the history
    gives the same result as folding everything at once.
    """
    balance = start
    for entry in entries:
        if entry.status != EntryStatus.POSTED:
            continue
        if entry.entry_type == EntryType.CREDIT:
            balance = money.add(balance, entry.amount)
        elif entry.entry_type == EntryType.DEBIT:
            balance = money.subtract(balance, entry.amount)
    return balance


def _sort_key(row: dict) -> tuple:
    return (row["created_at"], row["_seq"])


class LedgerStore:
    def __init__(
        self,
        storage: InMemoryStorage,
        money: Optional[MoneyContext] = None,
        clock: Callable = utc_now,
        default_currency: str = "INR",
        page_limit_max: int = 100,
    ):
        self.storage = storage
        self.money = money or MoneyContext()
        self.clock = clock
        self.default_currency = default_currency
        self.page_limit_max = page_limit_max

    def create_entry(
        self,
        user_id: UUID,
        entry_type: EntryType,
        amount: AmountLike,
        currency: Optional[str] = None,
        reward_id: Optional[UUID] = None,
        reversal_of_entry_id: Optional[UUID] = None,
        metadata: Optional[dict] = None,
    ) -> LedgerEntry:
        value = self.money.positive(amount)
        with self.storage.transaction():
            self._require_user(user_id)

            if reversal_of_entry_id is not None:
                original = self.storage.get(TABLE, reversal_of_entry_id)
                if original is None:
                    raise EntryNotFound(f"Ledger entry with ID {reversal_of_entry_id} not found")
                if original["status"] == EntryStatus.VOID:
                    raise AlreadyVoid(f"Ledger entry {reversal_of_entry_id} is already void")

            row = {
                "id": uuid4(),
                "user_id": user_id,
                "reward_id": reward_id,
                "entry_type": entry_type,
                "amount": value,
                "currency": currency or self.default_currency,
                "status": EntryStatus.POSTED,
                "reversal_of_entry_id": reversal_of_entry_id,
                "metadata": dict(metadata or {}),
                "created_at": self.clock(),
            }
            try:
                stored = self.storage.insert(TABLE, row)
            except UniqueViolation as exc:
                raise AlreadyReversed(f"Ledger entry {reversal_of_entry_id} has already been reversed") from exc

        logger.info(
            "ledger_entry_posted",
            entry_id=str(stored["id"]),
            user_id=str(user_id),
            entry_type=entry_type.value,
            amount=str(value),
            currency=stored["currency"],
        )
        return LedgerEntry(**stored)

    def create_credit(
        self,
        user_id: UUID,
        amount: AmountLike,
        reward_id: Optional[UUID] = None,
        currency: Optional[str] = None,
        metadata: Optional[dict] = None,
    ) -> LedgerEntry:
        return self.create_entry(
            user_id,
            EntryType.CREDIT,
            amount,
            currency=currency,
            reward_id=reward_id,
            metadata={**(metadata or {}), "action": "credit"},
        )

    def create_debit(
        self,
        user_id: UUID,
        amount: AmountLike,
        reward_id: Optional[UUID] = None,
        currency: Optional[str] = None,
        metadata: Optional[dict] = None,
    ) -> LedgerEntry:
        return self.create_entry(
            user_id,
            EntryType.DEBIT,
            amount,
            currency=currency,
            reward_id=reward_id,
            metadata={**(metadata or {}), "action": "debit"},
        )

    def reverse_entry(
        self, entry_id: UUID, reason: Optional[str] = None, reward_id: Optional[UUID] = None,
    ) -> LedgerEntry:
        """Void an entry and post its compensating REVERSAL.

        Entries tagged with a reward move together with the reward status,
        so they can only be reversed on behalf of that reward.
        """
        with self.storage.transaction():
            original = self.get_entry(entry_id)
            if original.reward_id is not None and original.reward_id != reward_id:
                raise RewardOwnedEntry(
                    f"Ledger entry {entry_id} belongs to reward {original.reward_id}; reverse the reward instead"
                )
            if original.status == EntryStatus.VOID:
                raise AlreadyVoid(f"Ledger entry {entry_id} is already void")
            if self.storage.find_unique(TABLE, "reversal_of_entry_id", entry_id) is not None:
                raise AlreadyReversed(f"Ledger entry {entry_id} has already been reversed")

            reversal = self.create_entry(
                original.user_id,
                EntryType.REVERSAL,
                original.amount,
                currency=original.currency,
                reward_id=original.reward_id,
                reversal_of_entry_id=entry_id,
                metadata={
                    "action": "reversal",
                    "reason": reason,
                    "original_entry_id": str(entry_id),
                    "original_type": original.entry_type.value,
                },
            )
            self.storage.update(TABLE, entry_id, status=EntryStatus.VOID)

        logger.info("ledger_entry_reversed", entry_id=str(entry_id), reversal_id=str(reversal.id))
        return reversal

    def get_entry(self, entry_id: UUID) -> LedgerEntry:
        row = self.storage.get(TABLE, entry_id)
        if row is None:
            raise EntryNotFound(f"Ledger entry with ID {entry_id} not found")
        return LedgerEntry(**row)

    def entries_for_user(self, user_id: UUID) -> list[LedgerEntry]:
        """Full history of a user in creation order."""
        rows = self.storage.select(TABLE, lambda r: r["user_id"] == user_id)
        return [LedgerEntry(**r) for r in sorted(rows, key=_sort_key)]

    def entries_for_reward(self, reward_id: UUID) -> list[LedgerEntry]:
        rows = self.storage.select(TABLE, lambda r: r["reward_id"] == reward_id)
        return [LedgerEntry(**r) for r in sorted(rows, key=_sort_key)]

    def calculate_balance(self, user_id: UUID, currency: Optional[str] = None) -> Decimal:
        self._require_user(user_id)
        entries = self.entries_for_user(user_id)
        if currency is not None:
            entries = [e for e in entries if e.currency == currency]
        return fold_balance(entries, self.money.zero, self.money)

    def get_balance(self, user_id: UUID, currency: Optional[str] = None) -> UserBalance:
        currency = currency or self.default_currency
        with self.storage.transaction():
            self._require_user(user_id)
            entries = [e for e in self.entries_for_user(user_id) if e.currency == currency]
        return UserBalance(
            user_id=user_id,
            currency=currency,
            current_balance=fold_balance(entries, self.money.zero, self.money),
            posted_entries=sum(1 for e in entries if e.is_posted),
            total_entries=len(entries),
            last_transaction_at=entries[-1].created_at if entries else None,
        )

    def list_by_user(self, user_id: UUID, cursor: Optional[UUID] = None, limit: int = 20) -> LedgerPage:
        """One page of a user's entries, newest first.

        The cursor is the id of the last entry of the previous page. Order
        is (created_at, insertion sequence) descending; entries inserted
        after the cursor was handed out sort before it and never shift the
        following pages.
        """
        if limit < 1 or limit > self.page_limit_max:
            raise ValidationError(f"limit must be between 1 and {self.page_limit_max}")

        with self.storage.transaction():
            self._require_user(user_id)
            rows = self.storage.select(TABLE, lambda r: r["user_id"] == user_id)
            rows.sort(key=_sort_key, reverse=True)

            if cursor is not None:
                anchor = self.storage.get(TABLE, cursor)
                if anchor is None or anchor["user_id"] != user_id:
                    raise EntryNotFound(f"Ledger entry with ID {cursor} not found")
                anchor_key = _sort_key(anchor)
                rows = [r for r in rows if _sort_key(r) < anchor_key]

        page = rows[: limit + 1]
        has_more = len(page) > limit
        entries = [LedgerEntry(**r) for r in page[:limit]]
        return LedgerPage(
            user_id=user_id,
            entries=entries,
            limit=limit,
            has_more=has_more,
            next_cursor=entries[-1].id if has_more else None,
        )

    def _require_user(self, user_id: UUID) -> None:
        if self.storage.get("users", user_id) is None:
            raise UserNotFound(f"User with ID {user_id} not found")
