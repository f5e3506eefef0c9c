"""timbr: a backend-independent representation of decision-tree ensembles."""

from loguru import logger

from timbr.adapters import build_forest, register_adapter
from timbr.duplicates import find_duplicates, forest_duplicates
from timbr.exceptions import (
    ColumnsNotFoundError,
    MissingValueError,
    SchemaError,
    StructuralInvariantError,
    TimbrError,
    UnknownLevelError,
    UnsupportedModelError,
)
from timbr.labels import column_label, parse_column_label
from timbr.logging import PACKAGE_NAME, enable_logging
from timbr.models import Forest, Node, TreeTable
from timbr.rules import forest_rules, node_rule, render_rule
from timbr.traversal import MembershipMatrix, compute_membership, predict, traverse
from timbr.variables import VariableDescriptor, build_variable_descriptors, classify_variable

logger.disable(PACKAGE_NAME)  # noqa: RUF067 - Disable logging for the timbr package by default

__all__ = [
    "ColumnsNotFoundError",
    "Forest",
    "MembershipMatrix",
    "MissingValueError",
    "Node",
    "SchemaError",
    "StructuralInvariantError",
    "TimbrError",
    "TreeTable",
    "UnknownLevelError",
    "UnsupportedModelError",
    "VariableDescriptor",
    "build_forest",
    "build_variable_descriptors",
    "classify_variable",
    "column_label",
    "compute_membership",
    "enable_logging",
    "find_duplicates",
    "forest_duplicates",
    "forest_rules",
    "node_rule",
    "parse_column_label",
    "predict",
    "register_adapter",
    "render_rule",
    "traverse",
]
