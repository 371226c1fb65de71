"""
Unit Tests for the Reward Service

Tests cover:
1. Credit reward flow
2. Idempotency (duplicate prevention)
3. Reversal flow
4. Balance calculation
5. State transitions
"""

import pytest
from decimal import Decimal
from itertools import product
from uuid import UUID

from core.errors import (
    InvalidAmount,
    InvalidTransition,
    NoCreditEntry,
    RewardNotFound,
    RewardOwnedEntry,
    SelfReferral,
    UserNotFound,
    ValidationError,
)
from ledger.models import EntryStatus, EntryType, RewardStatus


MISSING_ID = UUID("00000000-0000-0000-0000-000000000000")


def credit(services, referrer, referred, amount="500.00", key="reward-001", **kwargs):
    return services.rewards.credit(
        referrer_id=referrer.id,
        referred_id=referred.id,
        amount=Decimal(amount),
        idempotency_key=key,
        **kwargs,
    )


class TestCreditRewardFlow:
    """Tests for the credit reward flow."""

    def test_create_reward_success(self, services, referrer, referred):
        """Crediting creates a PENDING reward and one CREDIT entry for the referrer."""
        result = credit(services, referrer, referred, metadata={"campaign": "spring"})

        assert result.reward.status == RewardStatus.PENDING
        assert result.reward.amount == Decimal("500.00")
        assert result.reward.referrer_id == referrer.id
        assert result.reward.referred_id == referred.id
        assert result.reward.metadata == {"campaign": "spring"}
        assert result.replayed is False

        assert result.ledger_entry.entry_type == EntryType.CREDIT
        assert result.ledger_entry.amount == Decimal("500.00")
        assert result.ledger_entry.user_id == referrer.id
        assert result.ledger_entry.reward_id == result.reward.id
        assert result.ledger_entry.status == EntryStatus.POSTED

        assert services.ledger.calculate_balance(referrer.id) == Decimal("500.00")

    def test_idempotency_returns_existing(self, services, referrer, referred):
        """Same idempotency key returns the same reward and entry without a second credit."""
        first = credit(services, referrer, referred, key="K1")
        second = credit(services, referrer, referred, key="K1")

        assert second.reward.id == first.reward.id
        assert second.ledger_entry.id == first.ledger_entry.id
        assert second.replayed is True
        assert services.ledger.calculate_balance(referrer.id) == Decimal("500.00")
        assert len(services.ledger.entries_for_user(referrer.id)) == 1

    def test_multiple_rewards_accumulate(self, services, referrer, referred):
        credit(services, referrer, referred, amount="100.00", key="multi-001")
        credit(services, referrer, referred, amount="200.00", key="multi-002")

        balance = services.ledger.get_balance(referrer.id)
        assert balance.current_balance == Decimal("300.00")
        assert balance.total_entries == 2

    def test_self_referral_rejected(self, services, referrer):
        with pytest.raises(SelfReferral):
            credit(services, referrer, referrer)
        assert services.storage.count("rewards") == 0

    def test_unknown_user_rejected(self, services, referrer):
        ghost = type("Ghost", (), {"id": MISSING_ID})()
        with pytest.raises(UserNotFound):
            credit(services, referrer, ghost)
        assert services.storage.count("rewards") == 0
        assert services.storage.count("idempotency_keys") == 0

    @pytest.mark.parametrize("amount", ["0", "-5.00", "0.001"])
    def test_non_positive_amount_rejected(self, services, referrer, referred, amount):
        with pytest.raises(InvalidAmount):
            credit(services, referrer, referred, amount=amount)
        assert services.storage.count("ledger_entries") == 0

    def test_failed_credit_leaves_no_partial_state(self, services, referrer, referred, monkeypatch):
        """If the ledger write fails, the reward row and idempotency record roll back too."""
        def explode(*args, **kwargs):
            raise RuntimeError("store aborted")

        monkeypatch.setattr(services.ledger, "create_credit", explode)
        with pytest.raises(RuntimeError):
            credit(services, referrer, referred, key="atomic-001")

        assert services.storage.count("rewards") == 0
        assert services.storage.count("idempotency_keys") == 0

        monkeypatch.undo()
        result = credit(services, referrer, referred, key="atomic-001")
        assert result.replayed is False

    @pytest.mark.parametrize("metadata", [{"handle": object()}, ["not", "a", "dict"]])
    def test_unserializable_metadata_rejected(self, services, referrer, referred, metadata):
        with pytest.raises(ValidationError):
            credit(services, referrer, referred, key="meta-001", metadata=metadata)

        assert services.storage.count("rewards") == 0
        assert services.storage.count("idempotency_keys") == 0
        assert credit(services, referrer, referred, key="meta-001").replayed is False


class TestReverseRewardFlow:
    """Tests for the reverse reward flow."""

    def test_reverse_pending_reward(self, services, referrer, referred):
        reward = credit(services, referrer, referred, amount="1000.00").reward
        assert services.ledger.calculate_balance(referrer.id) == Decimal("1000.00")

        result = services.rewards.reverse(reward.id, "User cancelled subscription")

        assert result.reward.status == RewardStatus.REVERSED
        assert result.reward.reversal_reason == "User cancelled subscription"
        assert result.ledger_entry.entry_type == EntryType.REVERSAL
        assert result.ledger_entry.amount == Decimal("1000.00")

        original = services.rewards.original_credit(reward.id)
        assert original.status == EntryStatus.VOID
        assert result.ledger_entry.reversal_of_entry_id == original.id

        reversals = [e for e in services.ledger.entries_for_user(referrer.id) if e.entry_type == EntryType.REVERSAL]
        assert len(reversals) == 1
        assert services.ledger.calculate_balance(referrer.id) == Decimal("0.00")

    def test_reverse_confirmed_reward(self, services, referrer, referred):
        reward = credit(services, referrer, referred, amount="300.00").reward
        services.rewards.confirm(reward.id)

        result = services.rewards.reverse(reward.id, "Fraud detected")

        assert result.reward.status == RewardStatus.REVERSED
        assert services.ledger.calculate_balance(referrer.id) == Decimal("0.00")

    def test_cannot_reverse_already_reversed(self, services, referrer, referred):
        reward = credit(services, referrer, referred, amount="100.00").reward
        services.rewards.reverse(reward.id, "First reversal")

        with pytest.raises(InvalidTransition):
            services.rewards.reverse(reward.id, "Second reversal")

        reversals = [e for e in services.rewards.entries_for(reward.id) if e.entry_type == EntryType.REVERSAL]
        assert len(reversals) == 1

    def test_cannot_reverse_paid_reward(self, services, referrer, referred):
        reward = credit(services, referrer, referred).reward
        services.rewards.confirm(reward.id)
        services.rewards.pay(reward.id)

        with pytest.raises(InvalidTransition):
            services.rewards.reverse(reward.id)

    def test_reverse_nonexistent_reward_fails(self, services):
        with pytest.raises(RewardNotFound):
            services.rewards.reverse(MISSING_ID, "Test")

    def test_reverse_without_credit_entry(self, services, referrer, referred, monkeypatch):
        reward = credit(services, referrer, referred).reward
        monkeypatch.setattr(services.rewards, "original_credit", lambda reward_id: None)

        with pytest.raises(NoCreditEntry):
            services.rewards.reverse(reward.id)
        assert services.rewards.get(reward.id).status == RewardStatus.PENDING


class TestEntryLevelReversal:
    """Reversing a reward's entries by entry id must keep the reward in step."""

    def test_ledger_refuses_reward_entries(self, services, referrer, referred):
        result = credit(services, referrer, referred)

        with pytest.raises(RewardOwnedEntry):
            services.ledger.reverse_entry(result.ledger_entry.id)

        assert services.ledger.get_entry(result.ledger_entry.id).status == EntryStatus.POSTED
        assert services.rewards.get(result.reward.id).status == RewardStatus.PENDING

    def test_reversing_the_credit_reverses_the_reward(self, services, referrer, referred):
        result = credit(services, referrer, referred)

        reversal = services.rewards.reverse_entry(result.ledger_entry.id, "fraud")

        assert reversal.reversal_of_entry_id == result.ledger_entry.id
        reward = services.rewards.get(result.reward.id)
        assert reward.status == RewardStatus.REVERSED
        assert reward.reversal_reason == "fraud"

        with pytest.raises(InvalidTransition):
            services.rewards.confirm(reward.id)
        with pytest.raises(InvalidTransition):
            services.rewards.pay(reward.id)
        assert services.ledger.calculate_balance(referrer.id) == Decimal("0.00")

    def test_credit_of_paid_reward_cannot_be_reversed(self, services, referrer, referred):
        result = credit(services, referrer, referred)
        services.rewards.confirm(result.reward.id)
        services.rewards.pay(result.reward.id)

        with pytest.raises(InvalidTransition):
            services.rewards.reverse_entry(result.ledger_entry.id)

        assert services.ledger.get_entry(result.ledger_entry.id).status == EntryStatus.POSTED
        assert services.ledger.calculate_balance(referrer.id) >= 0

    def test_payout_debit_cannot_be_reversed_alone(self, services, referrer, referred):
        reward = credit(services, referrer, referred).reward
        services.rewards.confirm(reward.id)
        debit = services.rewards.pay(reward.id).ledger_entry

        with pytest.raises(RewardOwnedEntry):
            services.rewards.reverse_entry(debit.id)

        assert services.rewards.get(reward.id).status == RewardStatus.PAID
        assert services.ledger.calculate_balance(referrer.id) == Decimal("0.00")

    def test_untagged_entries_reverse_directly(self, services, referrer):
        entry = services.ledger.create_credit(referrer.id, "25")

        reversal = services.rewards.reverse_entry(entry.id)

        assert reversal.entry_type == EntryType.REVERSAL
        assert services.ledger.get_entry(entry.id).status == EntryStatus.VOID


class TestConfirmAndPayFlow:
    """Tests for the confirm and pay transitions."""

    def test_confirm_pending_reward(self, services, referrer, referred):
        reward = credit(services, referrer, referred, amount="250.00").reward

        confirmed = services.rewards.confirm(reward.id)

        assert confirmed.status == RewardStatus.CONFIRMED
        assert confirmed.confirmed_at is not None
        assert len(services.rewards.entries_for(reward.id)) == 1

    def test_confirm_then_pay(self, services, referrer, referred):
        reward = credit(services, referrer, referred, amount="500.00").reward
        services.rewards.confirm(reward.id)

        result = services.rewards.pay(reward.id)

        assert result.reward.status == RewardStatus.PAID
        assert result.reward.paid_at is not None
        assert result.ledger_entry.entry_type == EntryType.DEBIT
        assert result.ledger_entry.amount == Decimal("500.00")
        types = [e.entry_type for e in services.rewards.entries_for(reward.id)]
        assert types == [EntryType.CREDIT, EntryType.DEBIT]
        assert services.ledger.calculate_balance(referrer.id) == Decimal("0.00")

    def test_pay_requires_confirmation(self, services, referrer, referred):
        reward = credit(services, referrer, referred).reward

        with pytest.raises(InvalidTransition) as excinfo:
            services.rewards.pay(reward.id)

        assert excinfo.value.current == RewardStatus.PENDING
        assert excinfo.value.target == RewardStatus.PAID
        assert RewardStatus.CONFIRMED in excinfo.value.allowed
        assert services.rewards.get(reward.id).status == RewardStatus.PENDING

    def test_cannot_confirm_reversed_reward(self, services, referrer, referred):
        reward = credit(services, referrer, referred, amount="100.00").reward
        services.rewards.reverse(reward.id, "Test")

        with pytest.raises(InvalidTransition):
            services.rewards.confirm(reward.id)

    def test_failed_pay_leaves_status_unchanged(self, services, referrer, referred, monkeypatch):
        reward = credit(services, referrer, referred).reward
        services.rewards.confirm(reward.id)

        real_update = services.storage.update

        def failing_update(table, pk, **changes):
            if table == "rewards":
                raise RuntimeError("store aborted")
            return real_update(table, pk, **changes)

        monkeypatch.setattr(services.storage, "update", failing_update)
        with pytest.raises(RuntimeError):
            services.rewards.pay(reward.id)
        monkeypatch.undo()

        assert services.rewards.get(reward.id).status == RewardStatus.CONFIRMED
        assert [e.entry_type for e in services.rewards.entries_for(reward.id)] == [EntryType.CREDIT]


LEGAL = {
    (RewardStatus.PENDING, RewardStatus.CONFIRMED),
    (RewardStatus.PENDING, RewardStatus.REVERSED),
    (RewardStatus.CONFIRMED, RewardStatus.PAID),
    (RewardStatus.CONFIRMED, RewardStatus.REVERSED),
}

# Steps that bring a fresh reward into a given status.
SETUP = {
    RewardStatus.PENDING: [],
    RewardStatus.CONFIRMED: ["confirm"],
    RewardStatus.PAID: ["confirm", "pay"],
    RewardStatus.REVERSED: ["reverse"],
}

ACTION_FOR = {
    RewardStatus.CONFIRMED: "confirm",
    RewardStatus.PAID: "pay",
    RewardStatus.REVERSED: "reverse",
}


class TestTransitionLegality:
    @pytest.mark.parametrize(
        "current,target",
        [pair for pair in product(SETUP, ACTION_FOR) if pair not in LEGAL],
    )
    def test_illegal_transitions_fail_and_keep_status(self, services, referrer, referred, current, target):
        reward = credit(services, referrer, referred).reward
        for step in SETUP[current]:
            getattr(services.rewards, step)(reward.id)
        entries_before = services.rewards.entries_for(reward.id)

        with pytest.raises(InvalidTransition):
            getattr(services.rewards, ACTION_FOR[target])(reward.id)

        assert services.rewards.get(reward.id).status == current
        assert services.rewards.entries_for(reward.id) == entries_before


class TestBalanceCalculation:
    """Tests for balance calculation."""

    def test_balance_derived_from_entries(self, services, referrer, referred):
        credit(services, referrer, referred, amount="100.00", key="balance-001")
        credit(services, referrer, referred, amount="250.00", key="balance-002")
        reversed_reward = credit(services, referrer, referred, amount="50.00", key="balance-003").reward
        services.rewards.reverse(reversed_reward.id, "Test")

        # 100 + 250 + (50 voided) = 350; the reversal row itself adds nothing
        balance = services.ledger.get_balance(referrer.id)
        assert balance.current_balance == Decimal("350.00")
        assert balance.total_entries == 4
        assert balance.posted_entries == 3

    def test_referred_user_balance_untouched(self, services, referrer, referred):
        credit(services, referrer, referred)
        assert services.ledger.calculate_balance(referred.id) == Decimal("0.00")

    def test_rewards_listing(self, services, referrer, referred):
        first = credit(services, referrer, referred, key="list-001").reward
        second = credit(services, referrer, referred, key="list-002").reward
        services.rewards.confirm(second.id)

        assert [r.id for r in services.rewards.list_all()] == [second.id, first.id]
        assert [r.id for r in services.rewards.list_all(RewardStatus.PENDING)] == [first.id]
