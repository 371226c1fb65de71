from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional, Union
from uuid import UUID

from core.errors import MalformedRule

from .conditions import ConditionNode, parse_condition


class ActionType(str, Enum):
    CREATE_REWARD = "createReward"
    SET_REWARD_STATUS = "setRewardStatus"
    ISSUE_VOUCHER = "issueVoucher"
    SEND_NOTIFICATION = "sendNotification"


@dataclass
class Action:
    type: Union[ActionType, str]
    params: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        kind = self.type.value if isinstance(self.type, ActionType) else self.type
        return {"type": kind, "params": self.params}

    @classmethod
    def from_dict(cls, data: Any, strict: bool = True) -> "Action":
        if not isinstance(data, dict):
            raise MalformedRule(f"Action must be an object, got {type(data).__name__}")
        params = data.get("params", {})
        if not isinstance(params, dict):
            if strict:
                raise MalformedRule("Action params must be an object")
            params = {}
        try:
            kind = ActionType(data.get("type"))
        except ValueError:
            if strict:
                raise MalformedRule(f"Unknown action type: {data.get('type')!r}") from None
            kind = str(data.get("type"))
        return cls(type=kind, params=params)


def parse_actions(data: Any, strict: bool = True) -> list[Action]:
    if not isinstance(data, list):
        raise MalformedRule("Actions must be a list")
    if strict and not data:
        raise MalformedRule("A rule needs at least one action")
    return [Action.from_dict(a, strict) for a in data]


@dataclass
class Rule:
    id: UUID
    name: str
    version: int
    conditions: ConditionNode
    actions: list[Action]
    is_active: bool = True
    description: Optional[str] = None
    metadata: dict = field(default_factory=dict)
    created_at: Optional[datetime] = None

    def to_dict(self) -> dict:
        return {
            "id": str(self.id), "name": self.name, "description": self.description,
            "version": self.version, "is_active": self.is_active,
            "conditions": self.conditions.to_dict(),
            "actions": [a.to_dict() for a in self.actions], "metadata": self.metadata,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    @classmethod
    def from_row(cls, row: dict) -> "Rule":
        # Stored rules were validated on the way in; read them leniently.
        return cls(
            id=row["id"], name=row["name"], version=row["version"],
            conditions=parse_condition(row["conditions"], strict=False),
            actions=parse_actions(row["actions"], strict=False),
            is_active=row["is_active"], description=row.get("description"),
            metadata=row.get("metadata") or {}, created_at=row.get("created_at"),
        )


@dataclass
class TriggeredAction:
    action: Action
    rule_id: UUID
    rule_name: str
    rule_version: int

    def to_dict(self) -> dict:
        return {
            **self.action.to_dict(),
            "rule_id": str(self.rule_id), "rule_name": self.rule_name, "rule_version": self.rule_version,
        }


@dataclass
class RuleEvaluation:
    rule_id: UUID
    rule_name: str
    version: int
    matched: bool
    triggered_actions: list[Action] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "rule_id": str(self.rule_id), "rule_name": self.rule_name, "version": self.version,
            "matched": self.matched, "triggered_actions": [a.to_dict() for a in self.triggered_actions],
        }
