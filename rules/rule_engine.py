import structlog

from .conditions import evaluate as evaluate_condition
from .models import RuleEvaluation, TriggeredAction
from .store import RuleStore

logger = structlog.get_logger(__name__)


class RuleEngine:
    """Runs every active rule against one event.

    The engine only reports what should happen; it never mutates
    anything. The set of active rules is read once per call, so a rule
    activated concurrently may or may not take part in that call.
    """

    def __init__(self, store: RuleStore):
        self.store = store

    def evaluate(self, event: dict) -> list[TriggeredAction]:
        triggered = []
        for rule in self.store.list_active():
            if not evaluate_condition(rule.conditions, event):
                continue
            for action in rule.actions:
                triggered.append(TriggeredAction(
                    action=action, rule_id=rule.id, rule_name=rule.name, rule_version=rule.version,
                ))
        logger.debug("rules_evaluated", triggered=len(triggered))
        return triggered

    def explain(self, event: dict) -> list[RuleEvaluation]:
        results = []
        for rule in self.store.list_active():
            matched = evaluate_condition(rule.conditions, event)
            results.append(RuleEvaluation(
                rule_id=rule.id, rule_name=rule.name, version=rule.version, matched=matched,
                triggered_actions=list(rule.actions) if matched else [],
            ))
        return results
