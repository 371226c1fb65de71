from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Callable, Optional
from uuid import UUID

import structlog

from core.errors import CoreError, ValidationError
from ledger.service import RewardService

from .models import ActionType, TriggeredAction

logger = structlog.get_logger(__name__)

EXECUTED = "executed"
SKIPPED = "skipped"
FAILED = "failed"


@dataclass
class DispatchContext:
    referrer_id: UUID
    referred_id: UUID
    event_id: str


@dataclass
class DispatchOutcome:
    triggered: TriggeredAction
    status: str
    result: Any = None
    error: Optional[str] = None

    def to_dict(self) -> dict:
        result = self.result.model_dump(mode="json") if hasattr(self.result, "model_dump") else self.result
        return {
            "action": self.triggered.to_dict(), "status": self.status,
            "result": result, "error": self.error,
        }


Handler = Callable[[TriggeredAction, DispatchContext], Any]


class ActionDispatcher:
    """Carries out the actions the rule engine reports.

    ``createReward`` is handled natively through the reward service. Every
    other action type needs a registered handler; without one the action
    is reported as skipped.
    """

    def __init__(self, rewards: RewardService, handlers: Optional[dict] = None):
        self.rewards = rewards
        self.handlers: dict[str, Handler] = {ActionType.CREATE_REWARD.value: self._create_reward}
        for kind, handler in (handlers or {}).items():
            self.register(kind, handler)

    def register(self, kind, handler: Handler) -> None:
        self.handlers[kind.value if isinstance(kind, ActionType) else str(kind)] = handler

    def dispatch(
        self,
        triggered: list[TriggeredAction],
        referrer_id: UUID,
        referred_id: UUID,
        event_id: str,
    ) -> list[DispatchOutcome]:
        context = DispatchContext(referrer_id=referrer_id, referred_id=referred_id, event_id=event_id)
        outcomes = []
        for item in triggered:
            kind = item.action.type.value if isinstance(item.action.type, ActionType) else item.action.type
            handler = self.handlers.get(kind)
            if handler is None:
                outcomes.append(DispatchOutcome(item, SKIPPED))
                continue
            try:
                outcomes.append(DispatchOutcome(item, EXECUTED, result=handler(item, context)))
            except CoreError as exc:
                logger.warning(
                    "rule_action_failed",
                    action_type=kind, rule_id=str(item.rule_id), event_id=event_id, error=str(exc),
                )
                outcomes.append(DispatchOutcome(item, FAILED, error=str(exc)))
        return outcomes

    def _create_reward(self, item: TriggeredAction, context: DispatchContext):
        params = item.action.params
        if "amount" not in params:
            raise ValidationError("createReward action needs an amount")
        amount = params["amount"]
        if isinstance(amount, float):
            amount = Decimal(str(amount))
        return self.rewards.credit(
            referrer_id=context.referrer_id,
            referred_id=context.referred_id,
            amount=amount,
            idempotency_key=f"rule:{item.rule_id}:v{item.rule_version}:{context.event_id}",
            currency=params.get("currency"),
            metadata={
                "source": "rule",
                "rule_id": str(item.rule_id),
                "rule_name": item.rule_name,
                "rule_version": item.rule_version,
                "event_id": context.event_id,
                "reward_type": params.get("type"),
            },
        )
