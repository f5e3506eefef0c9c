"""Tests for duplicate node detection."""

from __future__ import annotations

import numpy as np
from pytest_check import check

from timbr.duplicates import duplicate_of, find_duplicates, forest_duplicates
from timbr.models import Forest, Node, TreeTable
from timbr.rules import node_rule
from timbr.variables import VariableDescriptor


class TestFindDuplicates:
    """Tests for duplicates within one tree."""

    def test_redundant_threshold_is_duplicate(self, xy_variables: tuple[VariableDescriptor, ...]) -> None:
        """`x <= 5` followed by `x <= 8` says nothing new about the left child."""
        # Arrange
        tree = TreeTable(
            index=0,
            nodes=(
                _threshold(1, left=2, right=3, threshold=5.0),
                _threshold(2, left=4, right=5, threshold=8.0),
                _leaf(3),
                _leaf(4),
                _leaf(5),
            ),
        )

        # Act
        flags = find_duplicates(tree, xy_variables)

        # Assert
        with check:
            assert flags == [False, False, False, True, False]
        with check:
            assert duplicate_of(tree, xy_variables) == {4: 2}

    def test_distinct_paths_are_not_duplicates(self, rule_tree: TreeTable, xy_variables: tuple[VariableDescriptor, ...]) -> None:
        """A tree whose splits all narrow something has no duplicates."""
        assert not any(find_duplicates(rule_tree, xy_variables))

    def test_full_level_subset_duplicates_parent(self, xy_variables: tuple[VariableDescriptor, ...]) -> None:
        """A factor split sending every level left leaves the left child unconstrained."""
        # Arrange
        root = Node(
            id=1,
            left_child=2,
            right_child=3,
            split_variable=1,
            split_levels=frozenset({0, 1, 2}),
            status="internal",
            prediction=0.0,
        )
        tree = TreeTable(index=0, nodes=(root, _leaf(2), _leaf(3)))

        # Act
        flags = find_duplicates(tree, xy_variables)

        # Assert
        assert flags == [False, True, False]

    def test_ordered_thresholds_compare_by_level(self) -> None:
        """Ordered thresholds that admit the same levels are equivalent."""
        # Arrange
        variables = (VariableDescriptor(name="grade", kind="ordered", levels=("A", "B", "C", "D")),)
        tree = TreeTable(
            index=0,
            nodes=(
                _threshold(1, left=2, right=3, threshold=2.5),
                _threshold(2, left=4, right=5, threshold=2.7),
                _leaf(3),
                _leaf(4),
                _leaf(5),
            ),
        )

        # Act
        duplicates = duplicate_of(tree, variables)

        # Assert
        assert duplicates == {4: 2}

    def test_idempotent(self, xy_variables: tuple[VariableDescriptor, ...]) -> None:
        """Running the detector twice gives the same flags."""
        # Arrange
        tree = TreeTable(
            index=0,
            nodes=(
                _threshold(1, left=2, right=3, threshold=5.0),
                _threshold(2, left=4, right=5, threshold=8.0),
                _leaf(3),
                _leaf(4),
                _leaf(5),
            ),
        )

        # Act / Assert
        assert find_duplicates(tree, xy_variables) == find_duplicates(tree, xy_variables)


class TestForestDuplicates:
    """Tests for duplicates across the whole forest."""

    def test_reordered_factor_subsets_match_across_trees(self, xy_variables: tuple[VariableDescriptor, ...]) -> None:
        """The same level subsets applied in a different order give equivalent nodes."""
        # Arrange
        forest = Forest(
            trees=(
                _two_level_tree(0, first={0, 1}, second={0, 2}),
                _two_level_tree(1, first={0, 2}, second={0, 1}),
            ),
            variables=xy_variables,
            task="regression",
        )

        # Act
        across = forest_duplicates(forest)
        within = forest_duplicates(forest, across_trees=False)

        # Assert
        with check:
            assert across.tolist() == [False, False, False, False, False, True, False, True, True, True]
        with check:
            assert not within.any()

    def test_later_roots_are_duplicates(self, two_tree_forest: Forest) -> None:
        """Every root after the first tree's repeats the empty constraint set."""
        # Act
        flags = forest_duplicates(two_tree_forest)

        # Assert
        with check:
            assert flags.dtype == np.bool_
        with check:
            assert flags.tolist() == [False, False, False, False, False, True]

    def test_mask_drops_duplicate_columns(self, two_tree_forest: Forest) -> None:
        """The mask aligns with the forest's membership columns."""
        # Act
        flags = forest_duplicates(two_tree_forest)

        # Assert
        kept = [label for label, flag in zip(two_tree_forest.column_labels(), flags, strict=True) if not flag]
        assert kept == ["t0_n1", "t0_n2", "t0_n3", "t0_n4", "t0_n5"]


class TestDuplicateRules:
    """A duplicate node renders the same constraints as the node it repeats."""

    def test_redundant_threshold_rules_match(self, xy_variables: tuple[VariableDescriptor, ...]) -> None:
        """`x <= 5` then `x <= 8` renders exactly like `x <= 5`."""
        # Arrange
        tree = TreeTable(
            index=0,
            nodes=(
                _threshold(1, left=2, right=3, threshold=5.0),
                _threshold(2, left=4, right=5, threshold=8.0),
                _leaf(3),
                _leaf(4),
                _leaf(5),
            ),
        )

        # Act
        pairs = duplicate_of(tree, xy_variables)

        # Assert
        assert pairs
        for duplicate, first in pairs.items():
            with check:
                assert _constraint_set(tree, duplicate, xy_variables) == _constraint_set(tree, first, xy_variables)

    def test_ordered_threshold_rules_match(self) -> None:
        """Ordered thresholds admitting the same levels render the same level bound."""
        # Arrange
        variables = (VariableDescriptor(name="grade", kind="ordered", levels=("A", "B", "C", "D")),)
        tree = TreeTable(
            index=0,
            nodes=(
                _threshold(1, left=2, right=3, threshold=2.5),
                _threshold(2, left=4, right=5, threshold=2.7),
                _leaf(3),
                _leaf(4),
                _leaf(5),
            ),
        )

        # Act
        pairs = duplicate_of(tree, variables)

        # Assert
        assert pairs == {4: 2}
        with check:
            assert _constraint_set(tree, 4, variables) == _constraint_set(tree, 2, variables)
        with check:
            assert _constraint_set(tree, 4, variables) == {"grade <= B"}

    def test_reordered_factor_subset_rules_match(self, xy_variables: tuple[VariableDescriptor, ...]) -> None:
        """Every flagged node of the second tree renders like its match in the first."""
        # Arrange
        first = _two_level_tree(0, first={0, 1}, second={0, 2})
        second = _two_level_tree(1, first={0, 2}, second={0, 1})
        forest = Forest(trees=(first, second), variables=xy_variables, task="regression")
        matches = {1: 1, 3: 5, 4: 4, 5: 3}

        # Act
        flags = forest_duplicates(forest)

        # Assert
        flagged = [node_id for (_, node_id), flag in zip(forest.column_keys(), flags, strict=True) if flag]
        with check:
            assert flagged == sorted(matches)
        for duplicate, original in matches.items():
            with check:
                assert _constraint_set(second, duplicate, xy_variables) == _constraint_set(
                    first, original, xy_variables
                )


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _leaf(node_id: int) -> Node:
    """Build a terminal node predicting 0.

    Args:
        node_id (int): Node id.

    Returns:
        Node: The leaf.
    """
    return Node(id=node_id, status="terminal", prediction=0.0)


def _threshold(node_id: int, *, left: int, right: int, threshold: float) -> Node:
    """Build an internal threshold split on variable 0.

    Args:
        node_id (int): Node id.
        left (int): Left child id.
        right (int): Right child id.
        threshold (float): Split threshold.

    Returns:
        Node: The internal node.
    """
    return Node(
        id=node_id,
        left_child=left,
        right_child=right,
        split_variable=0,
        split_threshold=threshold,
        status="internal",
        prediction=0.0,
    )


def _two_level_tree(index: int, *, first: set[int], second: set[int]) -> TreeTable:
    """Build a tree splitting `y` on `first` at the root and on `second` below its left child.

    Args:
        index (int): Tree index.
        first (set[int]): Level indices sent left at the root.
        second (set[int]): Level indices sent left at node 2.

    Returns:
        TreeTable: Nodes 1 and 2 internal, nodes 3 to 5 terminal.
    """
    return TreeTable(
        index=index,
        nodes=(
            Node(id=1, left_child=2, right_child=3, split_variable=1, split_levels=frozenset(first),
                 status="internal", prediction=0.0),
            Node(id=2, left_child=4, right_child=5, split_variable=1, split_levels=frozenset(second),
                 status="internal", prediction=0.0),
            _leaf(3),
            _leaf(4),
            _leaf(5),
        ),
    )


def _constraint_set(tree: TreeTable, node_id: int, variables: tuple[VariableDescriptor, ...]) -> set[str]:
    """Render a node's rule as an unordered set of constraints.

    Args:
        tree (TreeTable): The tree holding the node.
        node_id (int): Node id.
        variables (tuple[VariableDescriptor, ...]): The forest's variables.

    Returns:
        set[str]: The rendered constraints.
    """
    return set(node_rule(tree, node_id, variables).constraints)
