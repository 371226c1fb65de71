from typing import Any, Callable, Optional
from uuid import UUID, uuid4

import structlog

from core.errors import MalformedRule, RuleNotFound
from core.storage import InMemoryStorage, utc_now

from .conditions import parse_condition
from .models import Rule, parse_actions

logger = structlog.get_logger(__name__)

TABLE = "rules"

_UNSET: Any = object()


def _listing_order(row: dict) -> tuple:
    return (row["name"], -row["version"])


class RuleStore:
    """Versioned rule definitions.

    Rules are never edited: a change creates a new row with the next
    version number and deactivates the older versions of the same name,
    so at most one version per name is active. Only ``is_active`` may be
    flipped in place.
    """

    def __init__(self, storage: InMemoryStorage, clock: Callable = utc_now):
        self.storage = storage
        self.clock = clock

    def create(
        self,
        name: str,
        conditions: Any,
        actions: Any,
        metadata: Optional[dict] = None,
        description: Optional[str] = None,
        is_active: bool = True,
    ) -> Rule:
        if not isinstance(name, str) or not name.strip():
            raise MalformedRule("Rule name must be a non-empty string")
        tree = parse_condition(conditions, strict=True)
        parsed_actions = parse_actions(actions, strict=True)

        with self.storage.transaction():
            previous = self.storage.select(TABLE, lambda r: r["name"] == name)
            version = max((r["version"] for r in previous), default=0) + 1
            for row in previous:
                if row["is_active"]:
                    self.storage.update(TABLE, row["id"], is_active=False)
            stored = self.storage.insert(
                TABLE,
                {
                    "id": uuid4(),
                    "name": name,
                    "description": description,
                    "version": version,
                    "conditions": tree.to_dict(),
                    "actions": [a.to_dict() for a in parsed_actions],
                    "is_active": is_active,
                    "metadata": dict(metadata or {}),
                    "created_at": self.clock(),
                },
            )

        logger.info("rule_version_created", rule_id=str(stored["id"]), name=name, version=version)
        return Rule.from_row(stored)

    def update(
        self,
        rule_id: UUID,
        name: Optional[str] = None,
        conditions: Any = _UNSET,
        actions: Any = _UNSET,
        metadata: Optional[dict] = None,
        description: Optional[str] = None,
        is_active: Optional[bool] = None,
    ) -> Rule:
        """Apply changes to a rule.

        A change to ``is_active`` alone is applied in place; anything else
        becomes a new version carrying the untouched fields over.
        """
        with self.storage.transaction():
            current = self._row(rule_id)
            content_changed = (
                name is not None or description is not None or metadata is not None
                or conditions is not _UNSET or actions is not _UNSET
            )
            if not content_changed:
                if is_active is None:
                    return Rule.from_row(current)
                return self._set_active(current, is_active)

            return self.create(
                name=name or current["name"],
                conditions=current["conditions"] if conditions is _UNSET else conditions,
                actions=current["actions"] if actions is _UNSET else actions,
                metadata=current["metadata"] if metadata is None else metadata,
                description=current["description"] if description is None else description,
                is_active=True if is_active is None else is_active,
            )

    def deactivate(self, rule_id: UUID) -> Rule:
        with self.storage.transaction():
            return self._set_active(self._row(rule_id), False)

    def get_by_id(self, rule_id: UUID) -> Rule:
        return Rule.from_row(self._row(rule_id))

    def list_all(self) -> list[Rule]:
        rows = sorted(self.storage.select(TABLE), key=_listing_order)
        return [Rule.from_row(r) for r in rows]

    def list_active(self) -> list[Rule]:
        rows = sorted(self.storage.select(TABLE, lambda r: r["is_active"]), key=_listing_order)
        return [Rule.from_row(r) for r in rows]

    def get_latest_per_name(self) -> list[Rule]:
        latest: dict[str, dict] = {}
        for row in sorted(self.storage.select(TABLE), key=_listing_order):
            latest.setdefault(row["name"], row)
        return [Rule.from_row(r) for r in latest.values()]

    def find_latest(self, name: str) -> Optional[Rule]:
        rows = sorted(self.storage.select(TABLE, lambda r: r["name"] == name), key=_listing_order)
        return Rule.from_row(rows[0]) if rows else None

    def _set_active(self, row: dict, is_active: bool) -> Rule:
        if is_active:
            for other in self.storage.select(TABLE, lambda r: r["name"] == row["name"] and r["is_active"]):
                if other["id"] != row["id"]:
                    self.storage.update(TABLE, other["id"], is_active=False)
        updated = self.storage.update(TABLE, row["id"], is_active=is_active)
        logger.info("rule_activation_changed", rule_id=str(row["id"]), is_active=is_active)
        return Rule.from_row(updated)

    def _row(self, rule_id: UUID) -> dict:
        row = self.storage.get(TABLE, rule_id)
        if row is None:
            raise RuleNotFound(f"Rule with ID {rule_id} not found")
        return row
