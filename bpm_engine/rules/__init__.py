"""Built-in rules for the BPM workflow core."""

from .default_rules import get_default_rules, has_end_node, has_start_node

__all__ = [
    "get_default_rules",
    "has_start_node",
    "has_end_node",
]
