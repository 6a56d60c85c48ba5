"""Built-in workflow rules registered on startup."""

from typing import Any, Dict, List

from ..core.logging import get_logger
from ..models.core import GlobalRule, NodeCategory, RuleScope

logger = get_logger(__name__)


def _has_category(context: Dict[str, Any], category: NodeCategory) -> bool:
    nodes = context.get("nodes") or []
    return any(node.category == category for node in nodes)


def has_start_node(context: Dict[str, Any]) -> bool:
    """
    Check that the workflow has at least one start node.

    Args:
        context: Workflow rule context with ``nodes`` and ``edges``

    Returns:
        True if a node of category start exists
    """
    found = _has_category(context, NodeCategory.START)
    if not found:
        logger.debug("Workflow has no start node")
    return found


def has_end_node(context: Dict[str, Any]) -> bool:
    """
    Check that the workflow has at least one end node.

    Args:
        context: Workflow rule context with ``nodes`` and ``edges``

    Returns:
        True if a node of category end exists
    """
    found = _has_category(context, NodeCategory.END)
    if not found:
        logger.debug("Workflow has no end node")
    return found


def get_default_rules() -> List[GlobalRule]:
    """Rules every workflow is checked against unless disabled in configuration."""
    return [
        GlobalRule(
            id="require-start-node",
            name="Require Start Node",
            description="Workflow must have at least one start node",
            type="workflow",
            scope=RuleScope.WORKFLOW,
            priority=1,
            condition=has_start_node
        ),
        GlobalRule(
            id="require-end-node",
            name="Require End Node",
            description="Workflow must have at least one end node",
            type="workflow",
            scope=RuleScope.WORKFLOW,
            priority=2,
            condition=has_end_node
        ),
    ]
