"""Validation Engine for node, edge and workflow checks."""

import inspect
import re
from collections import namedtuple
from collections.abc import Mapping
from typing import Any, Dict, Generator, List, Optional, Sequence

from ..config import UnknownRulePolicy
from ..models.core import (
    ConnectionResult,
    ConnectionRule,
    EdgeConfig,
    NodeConfig,
    RuleKind,
    RuleScope,
    Severity,
    ValidationError,
    ValidationResult,
    ValidationRule,
)
from .events import EventBus, WorkflowEventType
from .exceptions import RuleExecutionError
from .expressions import ExpressionEvaluator
from .logging import get_logger
from .rule_registry import RuleRegistry, reject_awaitable

logger = get_logger(__name__)

UNKNOWN_RULE_CODE = "unknown_rule"

# A deferred call whose result (bool, {valid, message}, ...) is sent back into
# the check generator. call_async, when given, replaces call in async mode.
Check = namedtuple("Check", ["rule_id", "call", "call_async"], defaults=(None,))

CheckGenerator = Generator[Check, Any, List[ValidationError]]


def _is_empty(value: Any) -> bool:
    return value is None or value == ""


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _check_required(rule: ValidationRule, value: Any) -> bool:
    return not _is_empty(value)


def _check_min(rule: ValidationRule, value: Any) -> bool:
    if not _is_number(rule.value):
        return True
    if _is_number(value):
        return value >= rule.value
    if isinstance(value, str):
        return len(value) >= rule.value
    return True


def _check_max(rule: ValidationRule, value: Any) -> bool:
    if not _is_number(rule.value):
        return True
    if _is_number(value):
        return value <= rule.value
    if isinstance(value, str):
        return len(value) <= rule.value
    return True


def _check_pattern(rule: ValidationRule, value: Any) -> bool:
    if not isinstance(value, str) or not isinstance(rule.value, str):
        return True
    try:
        return re.search(rule.value, value) is not None
    except re.error as e:
        logger.warning(f"Invalid pattern in rule '{rule.id}': {e}")
        return True


def _check_custom(rule: ValidationRule, value: Any) -> bool:
    logger.debug(f"Custom rule '{rule.id}' has no validator, treated as passing")
    return True


_BUILTIN_CHECKS = {
    RuleKind.REQUIRED: _check_required,
    RuleKind.MIN: _check_min,
    RuleKind.MAX: _check_max,
    RuleKind.PATTERN: _check_pattern,
    RuleKind.CUSTOM: _check_custom,
}


def _connection_failure(result: Any, rule: ConnectionRule) -> Optional[str]:
    """Message for a failed connection rule result, or None when it passed."""
    fallback = rule.description or "Connection not allowed"
    if isinstance(result, ConnectionResult):
        return None if result.valid else (result.message or fallback)
    if isinstance(result, Mapping):
        return None if result.get("valid") else (result.get("message") or fallback)
    return None if result else fallback


class ValidationEngine:
    """Validates nodes, edges and whole workflows.

    Checks are written once as generators that yield deferred calls (custom
    validators, connection rules, registry rules). ``validate_*`` resolves them
    synchronously, ``validate_*_async`` awaits them. Both run the checks
    sequentially in array order.
    """

    def __init__(
        self,
        rule_registry: Optional[RuleRegistry] = None,
        event_bus: Optional[EventBus] = None,
        evaluator: Optional[ExpressionEvaluator] = None,
        unknown_rule_policy: UnknownRulePolicy = UnknownRulePolicy.FAIL_OPEN
    ):
        """Initialize the validation engine.

        Args:
            rule_registry: Source of globally registered node/edge/workflow rules
            event_bus: Channel notified after each workflow validation
            evaluator: Used to syntax-check edge conditions
            unknown_rule_policy: Treatment of unrecognised rule types
        """
        self.rule_registry = rule_registry
        self.event_bus = event_bus
        self.evaluator = evaluator or ExpressionEvaluator()
        self.unknown_rule_policy = UnknownRulePolicy(unknown_rule_policy)

    # Drivers

    def _resolve(self, check: Check) -> Any:
        try:
            return reject_awaitable(check.call(), check.rule_id)
        except RuleExecutionError:
            raise
        except Exception as e:
            logger.warning(f"Validator for rule '{check.rule_id}' raised: {e}", exc_info=True)
            return False

    async def _resolve_async(self, check: Check) -> Any:
        try:
            if check.call_async is not None:
                return await check.call_async()
            result = check.call()
            if inspect.isawaitable(result):
                result = await result
            return result
        except Exception as e:
            logger.warning(f"Validator for rule '{check.rule_id}' raised: {e}", exc_info=True)
            return False

    def _drive(self, checks: CheckGenerator) -> List[ValidationError]:
        try:
            check = next(checks)
            while True:
                check = checks.send(self._resolve(check))
        except StopIteration as stop:
            return stop.value
        finally:
            checks.close()

    async def _drive_async(self, checks: CheckGenerator) -> List[ValidationError]:
        try:
            check = next(checks)
            while True:
                value = await self._resolve_async(check)
                check = checks.send(value)
        except StopIteration as stop:
            return stop.value
        finally:
            checks.close()

    # Rule evaluation

    def _rule_failure(self, rule: ValidationRule, value: Any, context: Any) -> Generator[Check, Any, Optional[str]]:
        """Run one rule; return None when it passes, else the error code."""
        if rule.validator is not None:
            validator = rule.validator
            passed = yield Check(rule.id, lambda: validator(value, context))
            return None if passed else rule.type

        kind = rule.kind
        if kind is None:
            if self.unknown_rule_policy == UnknownRulePolicy.FAIL_CLOSED:
                return UNKNOWN_RULE_CODE
            logger.warning(f"Unknown validation rule type: {rule.type}")
            return None

        return None if _BUILTIN_CHECKS[kind](rule, value) else rule.type

    @staticmethod
    def _rule_message(rule: ValidationRule, code: str) -> str:
        if code == UNKNOWN_RULE_CODE:
            return f"Unknown validation rule type '{rule.type}'"
        return rule.message or "Validation failed"

    def _registry_rules(self, scope: RuleScope):
        if self.rule_registry is None:
            return []
        return [rule for rule in self.rule_registry.get_rules_by_scope(scope) if rule.enabled]

    def _registry_check(self, rule_id: str, context: Dict[str, Any]) -> Check:
        registry = self.rule_registry
        return Check(
            rule_id,
            lambda: registry.execute_rule(rule_id, context),
            lambda: registry.execute_rule_async(rule_id, context)
        )

    # Check generators

    def _node_checks(self, node: NodeConfig) -> CheckGenerator:
        problems = []

        if not node.id:
            problems.append(ValidationError(
                id=f"{node.id}-no-id",
                message="Node must have an id",
                node_id=node.id,
                field="id",
                code="required"
            ))
        if not node.node_type:
            problems.append(ValidationError(
                id=f"{node.id}-no-type",
                message="Node must have a type",
                node_id=node.id,
                field="nodeType",
                code="required"
            ))

        for prop in node.property_definitions:
            value = node.properties.get(prop.id)

            if prop.required and _is_empty(value):
                problems.append(ValidationError(
                    id=f"{node.id}-{prop.id}-required",
                    message=f"{prop.label} is required",
                    node_id=node.id,
                    field=prop.id,
                    code="required"
                ))

            if value is None:
                continue

            for rule in prop.validation:
                code = yield from self._rule_failure(rule, value, node)
                if code is not None:
                    problems.append(ValidationError(
                        id=f"{node.id}-{prop.id}-{rule.id}",
                        message=self._rule_message(rule, code),
                        node_id=node.id,
                        field=prop.id,
                        code=code
                    ))

        for rule in node.validation_rules:
            code = yield from self._rule_failure(rule, node, node)
            if code is not None:
                problems.append(ValidationError(
                    id=f"{node.id}-{rule.id}",
                    message=self._rule_message(rule, code),
                    node_id=node.id,
                    code=code
                ))

        for rule in self._registry_rules(RuleScope.NODE):
            passed = yield self._registry_check(rule.id, {"node": node})
            if not passed:
                problems.append(ValidationError(
                    id=f"{node.id}-{rule.id}",
                    message=rule.description or "Validation failed",
                    node_id=node.id,
                    code=rule.type
                ))

        return problems

    def _declarative_violation(
        self,
        rule: ConnectionRule,
        edge: EdgeConfig,
        source_node: NodeConfig,
        target_node: Optional[NodeConfig],
        edges: Optional[Sequence[EdgeConfig]]
    ) -> Optional[str]:
        """Check the declarative constraints of a connection rule."""
        if rule.source_node_types is not None and source_node.node_type not in rule.source_node_types:
            return f"Node type '{source_node.node_type}' is not allowed as source"
        if rule.target_node_types is not None and target_node is not None \
                and target_node.node_type not in rule.target_node_types:
            return f"Cannot connect to node type '{target_node.node_type}'"
        if rule.source_handle_types is not None and edge.source_handle is not None \
                and edge.source_handle not in rule.source_handle_types:
            return f"Source handle '{edge.source_handle}' is not allowed"
        if rule.target_handle_types is not None and edge.target_handle is not None \
                and edge.target_handle not in rule.target_handle_types:
            return f"Target handle '{edge.target_handle}' is not allowed"
        if edges is not None:
            if rule.max_output_connections is not None:
                outgoing = sum(1 for e in edges if e.source == source_node.id)
                if outgoing > rule.max_output_connections:
                    return f"At most {rule.max_output_connections} outgoing connection(s) allowed, found {outgoing}"
            if rule.max_input_connections is not None and edge.target:
                incoming = sum(1 for e in edges if e.target == edge.target)
                if incoming > rule.max_input_connections:
                    return f"At most {rule.max_input_connections} incoming connection(s) allowed, found {incoming}"
        return None

    def _edge_checks(
        self,
        edge: EdgeConfig,
        source_node: Optional[NodeConfig],
        target_node: Optional[NodeConfig],
        edges: Optional[Sequence[EdgeConfig]]
    ) -> CheckGenerator:
        problems = []

        if not edge.source:
            problems.append(ValidationError(
                id=f"{edge.id}-no-source",
                message="Edge must have a source",
                edge_id=edge.id,
                field="source",
                code="required"
            ))
        if not edge.target:
            problems.append(ValidationError(
                id=f"{edge.id}-no-target",
                message="Edge must have a target",
                edge_id=edge.id,
                field="target",
                code="required"
            ))

        # Connection rules belong to the source node; an unresolved source skips them.
        if source_node is not None:
            for rule in source_node.connection_rules:
                message = self._declarative_violation(rule, edge, source_node, target_node, edges)
                if message is not None:
                    message = rule.description or message
                elif rule.validate_fn is not None:
                    validate = rule.validate_fn
                    result = yield Check(
                        rule.id,
                        lambda: validate(source_node, target_node, edge.source_handle, edge.target_handle)
                    )
                    message = _connection_failure(result, rule)

                if message is not None:
                    problems.append(ValidationError(
                        id=f"{edge.id}-connection-{rule.id}",
                        message=message,
                        edge_id=edge.id,
                        code="connection"
                    ))

        context = {"edge": edge, "source_node": source_node, "target_node": target_node}
        for rule in self._registry_rules(RuleScope.EDGE):
            passed = yield self._registry_check(rule.id, context)
            if not passed:
                problems.append(ValidationError(
                    id=f"{edge.id}-{rule.id}",
                    message=rule.description or "Validation failed",
                    edge_id=edge.id,
                    code=rule.type
                ))

        return problems

    def _structural_warnings(
        self,
        nodes: Sequence[NodeConfig],
        edges: Sequence[EdgeConfig]
    ) -> List[ValidationError]:
        """Warnings about graph shapes the simulation resolves arbitrarily."""
        warnings = []
        outgoing: Dict[str, List[EdgeConfig]] = {}
        for edge in edges:
            outgoing.setdefault(edge.source, []).append(edge)

        for node in nodes:
            node_edges = outgoing.get(node.id, [])
            if node.is_gateway:
                defaults = [edge for edge in node_edges if edge.is_default]
                if len(defaults) > 1:
                    warnings.append(ValidationError(
                        id=f"{node.id}-multiple-defaults",
                        type=Severity.WARNING,
                        message=f"Gateway has {len(defaults)} default edges; only the first is used",
                        node_id=node.id,
                        code="multiple_defaults"
                    ))
            elif len(node_edges) > 1:
                warnings.append(ValidationError(
                    id=f"{node.id}-multiple-outgoing",
                    type=Severity.WARNING,
                    message=f"Node is not a gateway but has {len(node_edges)} outgoing edges; only the first is followed",
                    node_id=node.id,
                    code="multiple_outgoing"
                ))

        for edge in edges:
            for problem in self.evaluator.check_syntax(edge.condition_expression):
                warnings.append(ValidationError(
                    id=f"{edge.id}-condition-syntax",
                    type=Severity.WARNING,
                    message=f"Condition does not parse: {problem}",
                    edge_id=edge.id,
                    field="condition",
                    code="condition_syntax"
                ))

        return warnings

    def _workflow_checks(self, nodes: Sequence[NodeConfig], edges: Sequence[EdgeConfig]) -> CheckGenerator:
        problems = []

        for node in nodes:
            problems.extend((yield from self._node_checks(node)))

        # first match wins, as with a linear search
        index: Dict[str, NodeConfig] = {}
        for node in nodes:
            index.setdefault(node.id, node)

        for edge in edges:
            source_node = index.get(edge.source)
            target_node = index.get(edge.target)
            problems.extend((yield from self._edge_checks(edge, source_node, target_node, edges)))

        context = {"nodes": list(nodes), "edges": list(edges)}
        for rule in self._registry_rules(RuleScope.WORKFLOW):
            passed = yield self._registry_check(rule.id, context)
            if not passed:
                problems.append(ValidationError(
                    id=rule.id,
                    message=rule.description or "Workflow validation failed",
                    code=rule.type
                ))

        problems.extend(self._structural_warnings(nodes, edges))
        return problems

    def _finish_workflow(self, problems: List[ValidationError], nodes, edges) -> ValidationResult:
        result = ValidationResult.from_problems(problems)
        logger.info(
            f"Validated workflow with {len(nodes)} nodes and {len(edges)} edges: "
            f"{len(result.errors)} errors, {len(result.warnings)} warnings"
        )
        if self.event_bus is not None:
            self.event_bus.emit(WorkflowEventType.WORKFLOW_VALIDATED, result, source="ValidationEngine")
        return result

    # Public API

    def validate_node(self, node: NodeConfig) -> ValidationResult:
        """
        Validate a single node.

        Args:
            node: Node to validate

        Returns:
            ValidationResult with errors attributed to the node

        Raises:
            RuleExecutionError: If a validator or registry rule is asynchronous
        """
        return ValidationResult.from_problems(self._drive(self._node_checks(node)))

    async def validate_node_async(self, node: NodeConfig) -> ValidationResult:
        """Validate a single node, awaiting asynchronous validators."""
        return ValidationResult.from_problems(await self._drive_async(self._node_checks(node)))

    def validate_edge(
        self,
        edge: EdgeConfig,
        source_node: Optional[NodeConfig] = None,
        target_node: Optional[NodeConfig] = None,
        edges: Optional[Sequence[EdgeConfig]] = None
    ) -> ValidationResult:
        """
        Validate a single edge against the connection rules of its source node.

        Args:
            edge: Edge to validate
            source_node: Resolved source node, if any
            target_node: Resolved target node, if any
            edges: All edges of the workflow, enables cardinality checks

        Returns:
            ValidationResult with errors attributed to the edge

        Raises:
            RuleExecutionError: If a connection rule or registry rule is asynchronous
        """
        checks = self._edge_checks(edge, source_node, target_node, edges)
        return ValidationResult.from_problems(self._drive(checks))

    async def validate_edge_async(
        self,
        edge: EdgeConfig,
        source_node: Optional[NodeConfig] = None,
        target_node: Optional[NodeConfig] = None,
        edges: Optional[Sequence[EdgeConfig]] = None
    ) -> ValidationResult:
        """Validate a single edge, awaiting asynchronous rules."""
        checks = self._edge_checks(edge, source_node, target_node, edges)
        return ValidationResult.from_problems(await self._drive_async(checks))

    def validate_workflow(self, nodes: Sequence[NodeConfig], edges: Sequence[EdgeConfig]) -> ValidationResult:
        """
        Validate every node, every edge and the workflow-scoped rules.

        Edges whose source or target id matches no node are not reported; the
        checks that need the missing node are skipped.

        Args:
            nodes: Workflow nodes
            edges: Workflow edges

        Returns:
            Aggregate ValidationResult, also emitted as ``workflow:validated``

        Raises:
            RuleExecutionError: If a validator or registry rule is asynchronous
        """
        problems = self._drive(self._workflow_checks(nodes, edges))
        return self._finish_workflow(problems, nodes, edges)

    async def validate_workflow_async(
        self,
        nodes: Sequence[NodeConfig],
        edges: Sequence[EdgeConfig]
    ) -> ValidationResult:
        """Validate a workflow, awaiting asynchronous validators and rules."""
        problems = await self._drive_async(self._workflow_checks(nodes, edges))
        return self._finish_workflow(problems, nodes, edges)
