"""Shared fixtures: small hand-built forests with known structure."""

from __future__ import annotations

from collections.abc import Generator

import pytest

from timbr.config import get_settings
from timbr.models import Forest, Node, TreeTable
from timbr.variables import VariableDescriptor


@pytest.fixture(autouse=True)
def fresh_settings() -> Generator[None]:
    """Reload settings around every test so environment changes do not leak.

    Yields:
        None: Control returns to the test.
    """
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def xy_variables() -> tuple[VariableDescriptor, ...]:
    """Numeric `x` and factor `y` with levels a, b, c.

    Returns:
        tuple[VariableDescriptor, ...]: The two descriptors.
    """
    return (
        VariableDescriptor(name="x", kind="numeric"),
        VariableDescriptor(name="y", kind="factor", levels=("a", "b", "c")),
    )


@pytest.fixture
def two_tree_forest(xy_variables: tuple[VariableDescriptor, ...]) -> Forest:
    """Regression forest of two trees.

    Tree 0: node 1 splits `x <= 3` into leaf 2 (1.0) and node 3; node 3
    splits `y in {a}` into leaf 4 (2.0) and leaf 5 (3.0).
    Tree 1: a single leaf predicting 5.0.

    Args:
        xy_variables (tuple[VariableDescriptor, ...]): Fixture variables.

    Returns:
        Forest: The forest.
    """
    tree0 = TreeTable(
        index=0,
        nodes=(
            Node(id=1, left_child=2, right_child=3, split_variable=0, split_threshold=3.0, status="internal",
                 prediction=10.0),
            Node(id=2, status="terminal", prediction=1.0),
            Node(id=3, left_child=4, right_child=5, split_variable=1, split_levels=frozenset({0}), status="internal",
                 prediction=20.0),
            Node(id=4, status="terminal", prediction=2.0),
            Node(id=5, status="terminal", prediction=3.0),
        ),
    )
    tree1 = TreeTable(index=1, nodes=(Node(id=1, status="terminal", prediction=5.0),))
    return Forest(trees=(tree0, tree1), variables=xy_variables, task="regression")


@pytest.fixture
def rule_tree() -> TreeTable:
    """Regression tree that revisits `x` on several paths.

    Node 1 splits `x <= 5` into nodes 2 and 3. Node 2 splits `y in {a, b}`
    into nodes 4 and 5; node 4 splits `x <= 3` into leaves 8 and 9. Node 3
    splits `x <= 9` into leaves 6 and 7.

    Returns:
        TreeTable: The tree.
    """
    return _rule_tree(predictions=[0.0, 1.0, 2.0, 3.0, 4.0, 5.0, 6.0, 7.0, 8.0])


@pytest.fixture
def classification_rule_tree() -> TreeTable:
    """`rule_tree` with class-label predictions.

    Returns:
        TreeTable: The tree.
    """
    return _rule_tree(predictions=["yes", "no", "yes", "yes", "no", "no", "yes", "yes", "no"])


def _rule_tree(predictions: list[float] | list[str]) -> TreeTable:
    """Build the `rule_tree` shape with the given per-node predictions.

    Args:
        predictions (list[float] | list[str]): One prediction per node, in id order.

    Returns:
        TreeTable: The tree.
    """
    return TreeTable(
        index=0,
        nodes=(
            Node(id=1, left_child=2, right_child=3, split_variable=0, split_threshold=5.0, status="internal",
                 prediction=predictions[0]),
            Node(id=2, left_child=4, right_child=5, split_variable=1, split_levels=frozenset({0, 1}),
                 status="internal", prediction=predictions[1]),
            Node(id=3, left_child=6, right_child=7, split_variable=0, split_threshold=9.0, status="internal",
                 prediction=predictions[2]),
            Node(id=4, left_child=8, right_child=9, split_variable=0, split_threshold=3.0, status="internal",
                 prediction=predictions[3]),
            Node(id=5, status="terminal", prediction=predictions[4]),
            Node(id=6, status="terminal", prediction=predictions[5]),
            Node(id=7, status="terminal", prediction=predictions[6]),
            Node(id=8, status="terminal", prediction=predictions[7]),
            Node(id=9, status="terminal", prediction=predictions[8]),
        ),
    )
