"""Rule Registry component for managing globally registered validation rules."""

import inspect
import threading
from typing import Any, Dict, Iterable, List, Optional

from ..models.core import GlobalRule, RuleScope
from .events import EventBus, WorkflowEventType
from .exceptions import RuleExecutionError, RuleRegistryError
from .logging import get_logger

logger = get_logger(__name__)


def reject_awaitable(value: Any, rule_id: Optional[str] = None) -> Any:
    """Return value unchanged unless it is awaitable.

    Synchronous validation cannot resolve awaitables, so coroutines are closed
    (to avoid "never awaited" warnings) and reported as a RuleExecutionError.
    """
    if inspect.isawaitable(value):
        close = getattr(value, "close", None)
        if close is not None:
            close()
        raise RuleExecutionError(
            "Asynchronous rule or validator used in synchronous validation; use the async variant",
            rule_id=rule_id
        )
    return value


class RuleRegistry:
    """Registry for rules that are executed at node, edge or workflow scope."""

    def __init__(self, event_bus: Optional[EventBus] = None):
        """Initialize the rule registry.

        Args:
            event_bus: Optional bus notified when rules are registered or removed
        """
        self._rules: Dict[str, GlobalRule] = {}
        self._lock = threading.RLock()
        self._event_bus = event_bus

    def register_rule(self, rule: GlobalRule) -> None:
        """Register a rule, replacing any rule with the same id.

        Args:
            rule: Rule to register

        Raises:
            RuleRegistryError: If rule is not a GlobalRule
        """
        if not isinstance(rule, GlobalRule):
            raise RuleRegistryError(
                f"Expected a GlobalRule, got {type(rule).__name__}",
                operation="register"
            )

        with self._lock:
            if rule.id in self._rules:
                logger.warning(f"Rule '{rule.id}' already exists in RuleRegistry. Overwriting...")
                # re-registration moves the rule to the end of the registration order
                del self._rules[rule.id]
            self._rules[rule.id] = rule

        logger.info(f"Registered rule '{rule.id}' (scope={rule.scope.value}, priority={rule.priority})")
        if self._event_bus is not None:
            self._event_bus.emit(
                WorkflowEventType.REGISTRY_ITEM_REGISTERED,
                {"registry": "RuleRegistry", "item": rule.id},
                source="RuleRegistry"
            )

    def register_rules(self, rules: Iterable[GlobalRule]) -> None:
        """Register several rules in order."""
        for rule in rules:
            self.register_rule(rule)

    def unregister_rule(self, rule_id: str) -> bool:
        """Remove a rule from the registry.

        Returns:
            True if the rule was removed, False if it was not registered
        """
        with self._lock:
            removed = self._rules.pop(rule_id, None)

        if removed is None:
            return False

        logger.info(f"Unregistered rule '{rule_id}'")
        if self._event_bus is not None:
            self._event_bus.emit(
                WorkflowEventType.REGISTRY_ITEM_UNREGISTERED,
                {"registry": "RuleRegistry", "item": rule_id},
                source="RuleRegistry"
            )
        return True

    def get_rule(self, rule_id: str) -> GlobalRule:
        """Retrieve a registered rule.

        Raises:
            RuleRegistryError: If the rule is not registered
        """
        with self._lock:
            rule = self._rules.get(rule_id)
        if rule is None:
            raise RuleRegistryError(f"Rule '{rule_id}' is not registered", rule_id=rule_id, operation="get")
        return rule

    def rule_exists(self, rule_id: str) -> bool:
        with self._lock:
            return rule_id in self._rules

    def list_rules(self) -> List[GlobalRule]:
        """All rules in registration order."""
        with self._lock:
            return list(self._rules.values())

    def get_rules_by_scope(self, scope) -> List[GlobalRule]:
        """Rules of a scope ordered by priority, then registration order."""
        scope = RuleScope(scope)
        with self._lock:
            rules = [rule for rule in self._rules.values() if rule.scope == scope]
        return sorted(rules, key=lambda rule: rule.priority)

    def get_enabled_rules(self) -> List[GlobalRule]:
        with self._lock:
            return [rule for rule in self._rules.values() if rule.enabled]

    def clear(self) -> None:
        """Remove every rule."""
        with self._lock:
            self._rules.clear()
        logger.debug("Rule registry cleared")

    def _executable_rule(self, rule_id: str) -> Optional[GlobalRule]:
        with self._lock:
            rule = self._rules.get(rule_id)
        if rule is None or not rule.enabled:
            return None
        return rule

    def execute_rule(self, rule_id: str, context: Any) -> bool:
        """Execute a rule synchronously.

        A missing or disabled rule passes. A falsy condition fails the rule.
        Exceptions raised by the condition or action fail the rule and are logged.

        Args:
            rule_id: Id of the rule to run
            context: Mapping handed to the condition and the action

        Returns:
            True if the rule passed

        Raises:
            RuleExecutionError: If the condition or action returns an awaitable
        """
        rule = self._executable_rule(rule_id)
        if rule is None:
            return True

        try:
            if rule.condition is not None:
                if not reject_awaitable(rule.condition(context), rule_id):
                    logger.debug(f"Rule '{rule_id}' condition not met")
                    return False
            if rule.action is not None:
                reject_awaitable(rule.action(context), rule_id)
            return True
        except RuleExecutionError:
            raise
        except Exception as e:
            logger.error(f"Error executing rule '{rule_id}': {e}", exc_info=True)
            return False

    async def execute_rule_async(self, rule_id: str, context: Any) -> bool:
        """Execute a rule, awaiting asynchronous conditions and actions."""
        rule = self._executable_rule(rule_id)
        if rule is None:
            return True

        try:
            if rule.condition is not None:
                result = rule.condition(context)
                if inspect.isawaitable(result):
                    result = await result
                if not result:
                    logger.debug(f"Rule '{rule_id}' condition not met")
                    return False
            if rule.action is not None:
                result = rule.action(context)
                if inspect.isawaitable(result):
                    await result
            return True
        except Exception as e:
            logger.error(f"Error executing rule '{rule_id}': {e}", exc_info=True)
            return False

    def execute_rules(self, rule_ids: Iterable[str], context: Any) -> List[bool]:
        """Execute several rules sequentially, preserving order."""
        return [self.execute_rule(rule_id, context) for rule_id in rule_ids]

    def get_rule_info(self, rule_id: str) -> Dict[str, Any]:
        """Serializable description of a rule (callables excluded)."""
        return self.get_rule(rule_id).model_dump(by_alias=True, mode="json")
