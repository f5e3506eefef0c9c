"""Canonical node tables: the backend-independent representation of trees and forests.

Adapters translate a backend's native trees into `TreeTable` instances that
share one sequence of `VariableDescriptor` objects inside a `Forest`. All
structural invariants are checked once, when a table or forest is
constructed; everything downstream assumes they hold.
"""

from __future__ import annotations

from collections import deque
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, PrivateAttr, model_validator

from timbr.exceptions import SchemaError, StructuralInvariantError
from timbr.labels import column_label
from timbr.variables import VariableDescriptor

# ---------------------------------------------------------------------------
# Public type aliases
# ---------------------------------------------------------------------------

type NodeStatus = Literal["terminal", "internal"]

type MissingBranch = Literal["left", "right", "undefined"]

type TreeTask = Literal["classification", "regression"]

# ---------------------------------------------------------------------------
# Public models
# ---------------------------------------------------------------------------


class Node(BaseModel):
    """One row of a canonical node table.

    Internal nodes route an observation left when its value is at most
    `split_threshold` (numeric and ordered variables) or when its level index
    is in `split_levels` (factor variables); otherwise right.

    Attributes:
        id (int): 1-based position within the tree; the root is 1.
        left_child (int | None): Id of the left child, `None` for terminal nodes.
        right_child (int | None): Id of the right child, `None` for terminal nodes.
        missing_branch (MissingBranch): Child followed when the split value is
            missing, or `"undefined"` when the backend cannot route missing values.
        split_variable (int | None): 0-based index into the forest's variables.
        split_threshold (float | None): Threshold for numeric and ordered splits.
        split_levels (frozenset[int] | None): 0-based level indices sent left by
            a factor split.
        status (NodeStatus): `"terminal"` or `"internal"`.
        prediction (float | str): Value the node outputs if treated as a leaf:
            a class label for classifiers, a number for regressors.

    Examples:
        >>> node = Node(id=1, left_child=2, right_child=3, split_variable=0,
        ...             split_threshold=3.0, status="internal", prediction=1.5)
        >>> node.goes_left(2.0)
        True
    """

    model_config = ConfigDict(frozen=True)

    id: int = Field(ge=1, description="1-based position within the tree; the root is 1.")
    left_child: int | None = Field(default=None, description="Id of the left child, None for terminal nodes.")
    right_child: int | None = Field(default=None, description="Id of the right child, None for terminal nodes.")
    missing_branch: MissingBranch = Field(
        default="undefined",
        description="Child followed when the split value is missing; 'undefined' if the backend cannot route it.",
    )
    split_variable: int | None = Field(default=None, ge=0, description="0-based index of the split variable.")
    split_threshold: float | None = Field(default=None, description="Threshold for numeric and ordered splits.")
    split_levels: frozenset[int] | None = Field(
        default=None,
        description="0-based level indices sent to the left child by a factor split.",
    )
    status: NodeStatus = Field(description="'terminal' or 'internal'.")
    prediction: float | str = Field(description="Class label or numeric value output at this node.")

    @property
    def is_terminal(self) -> bool:
        """Whether the node is a leaf."""
        return self.status == "terminal"

    def goes_left(self, value: float | int) -> bool:
        """Evaluate the split for a non-missing value.

        Args:
            value (float | int): The observation's numeric value, ordered level
                code (1-based), or factor level index (0-based).

        Returns:
            bool: True when the observation is routed to the left child.
        """
        if self.split_levels is not None:
            return int(value) in self.split_levels
        return value <= self.split_threshold  # type: ignore[operator]


class TreeTable(BaseModel):
    """Canonical node table of one tree.

    Validation on construction guarantees a proper binary tree: ids are
    `1..n` in order, every non-root node has exactly one parent, every node is
    reachable from the root, and terminal and internal nodes carry the fields
    their status requires.

    Attributes:
        index (int): 0-based position of the tree in its forest.
        nodes (tuple[Node, ...]): Nodes ordered by id.
    """

    model_config = ConfigDict(frozen=True)

    index: int = Field(ge=0, description="0-based position of the tree in its forest.")
    nodes: tuple[Node, ...] = Field(min_length=1, description="Nodes ordered by id.")

    _parents: dict[int, int] = PrivateAttr(default_factory=dict)

    @model_validator(mode="after")
    def _validate_tree_structure(self) -> TreeTable:
        """Check the tree invariants and record each node's parent.

        Returns:
            TreeTable: The validated model instance.

        Raises:
            StructuralInvariantError: If the nodes do not form a binary tree
                rooted at id 1.
        """
        self._parents = _check_tree_invariants(self.index, self.nodes)
        return self

    def __len__(self) -> int:
        """Return the number of nodes in the tree.

        Returns:
            int: Node count.
        """
        return len(self.nodes)

    @property
    def root(self) -> Node:
        """The root node (id 1)."""
        return self.nodes[0]

    def node(self, node_id: int) -> Node:
        """Return the node with the given id.

        Args:
            node_id (int): 1-based node id.

        Returns:
            Node: The node.

        Raises:
            KeyError: If no node has this id.
        """
        if not 1 <= node_id <= len(self.nodes):
            raise KeyError(node_id)
        return self.nodes[node_id - 1]

    def parent(self, node_id: int) -> int | None:
        """Return the parent id of a node, or `None` for the root.

        Args:
            node_id (int): 1-based node id.

        Returns:
            int | None: The parent's id.
        """
        self.node(node_id)
        return self._parents.get(node_id)

    def path_to(self, node_id: int) -> list[int]:
        """Return the node ids from the root down to `node_id`, inclusive.

        Args:
            node_id (int): 1-based node id.

        Returns:
            list[int]: Ids starting with 1 and ending with `node_id`.
        """
        path = [node_id]
        parent = self.parent(node_id)
        while parent is not None:
            path.append(parent)
            parent = self._parents.get(parent)
        path.reverse()
        return path

    def terminal_ids(self) -> list[int]:
        """Return the ids of all terminal nodes in id order.

        Returns:
            list[int]: Leaf ids.
        """
        return [node.id for node in self.nodes if node.is_terminal]

    def depth(self) -> int:
        """Return the number of splits on the longest root-to-leaf path.

        Returns:
            int: 0 for a single-leaf tree.
        """
        return max(len(self.path_to(leaf_id)) - 1 for leaf_id in self.terminal_ids())


class Forest(BaseModel):
    """An ordered collection of node tables sharing one variable description.

    Built once per source model by an adapter (see `timbr.adapters.build_forest`)
    and read-only afterwards. Can be persisted with `model_dump_json()` and
    restored with `Forest.model_validate_json()`, which re-runs every check.

    Attributes:
        trees (tuple[TreeTable, ...]): Trees in model order; `trees[i].index == i`.
        variables (tuple[VariableDescriptor, ...]): Predictors referenced by
            `Node.split_variable`.
        task (TreeTask): `"classification"` or `"regression"`.
        class_labels (tuple[str, ...] | None): Class labels in model order for
            classification forests; `None` for regression.
        model_kind (str): Tag of the adapter that built the forest.
    """

    model_config = ConfigDict(frozen=True)

    trees: tuple[TreeTable, ...] = Field(min_length=1, description="Trees in model order.")
    variables: tuple[VariableDescriptor, ...] = Field(description="Predictors referenced by split nodes.")
    task: TreeTask = Field(description="'classification' or 'regression'.")
    class_labels: tuple[str, ...] | None = Field(
        default=None,
        description="Class labels in model order for classification forests.",
    )
    model_kind: str = Field(default="custom", description="Tag of the adapter that built the forest.")

    @model_validator(mode="after")
    def _validate_forest(self) -> Forest:
        """Check tree positions, split encodings, and predictions against the metadata.

        Returns:
            Forest: The validated model instance.

        Raises:
            StructuralInvariantError: If a tree's index does not match its position.
            SchemaError: If a split references an unknown variable, a split
                encoding does not match its variable's kind, or a prediction does
                not match the task.
        """
        if self.task == "classification" and not self.class_labels:
            raise SchemaError("Classification forests require class labels")
        if self.task == "regression" and self.class_labels is not None:
            raise SchemaError("Regression forests must not carry class labels")
        for position, tree in enumerate(self.trees):
            if tree.index != position:
                raise StructuralInvariantError(
                    f"Tree at position {position} has index {tree.index}",
                    tree_index=position,
                )
            for node in tree.nodes:
                self._validate_prediction(tree.index, node)
                if not node.is_terminal:
                    self._validate_split(tree.index, node)
        return self

    @property
    def n_trees(self) -> int:
        """Number of trees in the forest."""
        return len(self.trees)

    @property
    def n_nodes(self) -> int:
        """Total number of nodes across all trees."""
        return sum(len(tree) for tree in self.trees)

    def column_keys(self) -> list[tuple[int, int]]:
        """Return the `(tree index, node id)` pair of every node in forest order.

        Returns:
            list[tuple[int, int]]: One pair per membership-matrix column.
        """
        return [(tree.index, node.id) for tree in self.trees for node in tree.nodes]

    def column_labels(self) -> list[str]:
        """Return the stable membership column label of every node in forest order.

        Returns:
            list[str]: Labels such as `"t0_n1"`.
        """
        return [column_label(tree_index, node_id) for tree_index, node_id in self.column_keys()]

    def variable_index(self, name: str) -> int:
        """Return the position of a variable by name.

        Args:
            name (str): Predictor name.

        Returns:
            int: 0-based index into `variables`.

        Raises:
            KeyError: If no variable has this name.
        """
        for index, variable in enumerate(self.variables):
            if variable.name == name:
                return index
        raise KeyError(name)

    def _validate_split(self, tree_index: int, node: Node) -> None:
        """Check that an internal node's split matches its variable.

        Args:
            tree_index (int): Index of the tree holding `node`.
            node (Node): An internal node.

        Raises:
            SchemaError: If the variable index is out of range or the split
                encoding does not match the variable's kind.
        """
        variable_index = node.split_variable
        if variable_index is None or variable_index >= len(self.variables):
            raise SchemaError(
                f"Split variable index {variable_index} is outside the {len(self.variables)} known variables",
                tree_index=tree_index,
                node_id=node.id,
            )
        variable = self.variables[variable_index]
        if variable.is_threshold_split and node.split_threshold is None:
            raise SchemaError(
                f"{variable.kind.capitalize()} split requires a threshold",
                tree_index=tree_index,
                node_id=node.id,
                variable=variable.name,
            )
        if not variable.is_threshold_split:
            if node.split_levels is None:
                raise SchemaError(
                    "Factor split requires a level subset",
                    tree_index=tree_index,
                    node_id=node.id,
                    variable=variable.name,
                )
            unknown_levels = sorted(level for level in node.split_levels if not 0 <= level < len(variable.levels))
            if unknown_levels:
                raise SchemaError(
                    f"Factor split references level indices {unknown_levels} outside {len(variable.levels)} levels",
                    tree_index=tree_index,
                    node_id=node.id,
                    variable=variable.name,
                )

    def _validate_prediction(self, tree_index: int, node: Node) -> None:
        """Check that a node's prediction matches the forest task.

        Args:
            tree_index (int): Index of the tree holding `node`.
            node (Node): Any node.

        Raises:
            SchemaError: If a classification prediction is not a known class
                label or a regression prediction is not numeric.
        """
        if self.task == "classification":
            if node.prediction not in (self.class_labels or ()):
                raise SchemaError(
                    f"Prediction {node.prediction!r} is not one of the class labels {list(self.class_labels or ())}",
                    tree_index=tree_index,
                    node_id=node.id,
                )
        elif not isinstance(node.prediction, float):
            raise SchemaError(
                f"Regression prediction must be numeric, got {node.prediction!r}",
                tree_index=tree_index,
                node_id=node.id,
            )


# ---------------------------------------------------------------------------
# Private helpers -- Tree invariants
# ---------------------------------------------------------------------------


def _check_tree_invariants(tree_index: int, nodes: tuple[Node, ...]) -> dict[int, int]:
    """Verify that `nodes` form a binary tree rooted at id 1.

    Args:
        tree_index (int): Index of the tree, used in error messages.
        nodes (tuple[Node, ...]): Nodes ordered by id.

    Returns:
        dict[int, int]: Mapping of each non-root node id to its parent id.

    Raises:
        StructuralInvariantError: On the first violated invariant.
    """
    n_nodes = len(nodes)
    for position, node in enumerate(nodes, start=1):
        if node.id != position:
            raise StructuralInvariantError(
                f"Node at position {position} has id {node.id}; ids must be 1..{n_nodes} in order",
                tree_index=tree_index,
                node_id=node.id,
            )

    parents: dict[int, int] = {}
    for node in nodes:
        if node.is_terminal:
            _check_terminal_node(tree_index, node)
            continue
        _check_internal_node(tree_index, node)
        for child in (node.left_child, node.right_child):
            if not 1 <= child <= n_nodes:  # type: ignore[operator]
                raise StructuralInvariantError(
                    f"Child id {child} does not exist",
                    tree_index=tree_index,
                    node_id=node.id,
                )
            if child == node.id:
                raise StructuralInvariantError("Node is its own child", tree_index=tree_index, node_id=node.id)
            if child == 1:
                raise StructuralInvariantError("Root cannot be a child", tree_index=tree_index, node_id=node.id)
            if child in parents:
                raise StructuralInvariantError(
                    f"Node {child} is a child of both node {parents[child]} and node {node.id}",
                    tree_index=tree_index,
                    node_id=child,
                )
            parents[child] = node.id  # type: ignore[index]

    reached = _reachable_from_root(nodes)
    for node in nodes:
        if node.id in reached:
            continue
        if node.id not in parents:
            raise StructuralInvariantError("Node is not referenced by any parent", tree_index=tree_index, node_id=node.id)
        raise StructuralInvariantError(
            "Node is unreachable from the root; it is its own ancestor",
            tree_index=tree_index,
            node_id=node.id,
        )
    return parents


def _check_terminal_node(tree_index: int, node: Node) -> None:
    """Reject terminal nodes that carry children or a split.

    Args:
        tree_index (int): Index of the tree, used in error messages.
        node (Node): A terminal node.

    Raises:
        StructuralInvariantError: If the node has a child or split field set.
    """
    if node.left_child is not None or node.right_child is not None:
        raise StructuralInvariantError("Terminal node has children", tree_index=tree_index, node_id=node.id)
    if node.split_variable is not None or node.split_threshold is not None or node.split_levels is not None:
        raise StructuralInvariantError("Terminal node has a split", tree_index=tree_index, node_id=node.id)


def _check_internal_node(tree_index: int, node: Node) -> None:
    """Reject internal nodes without two children or without exactly one split encoding.

    Args:
        tree_index (int): Index of the tree, used in error messages.
        node (Node): An internal node.

    Raises:
        StructuralInvariantError: If a child, the split variable, or the split
            encoding is missing, or both encodings are set.
    """
    if node.left_child is None or node.right_child is None:
        raise StructuralInvariantError("Internal node must have two children", tree_index=tree_index, node_id=node.id)
    if node.left_child == node.right_child:
        raise StructuralInvariantError(
            "Internal node has the same left and right child",
            tree_index=tree_index,
            node_id=node.id,
        )
    if node.split_variable is None:
        raise StructuralInvariantError("Internal node has no split variable", tree_index=tree_index, node_id=node.id)
    if (node.split_threshold is None) == (node.split_levels is None):
        raise StructuralInvariantError(
            "Internal node must have exactly one of split_threshold and split_levels",
            tree_index=tree_index,
            node_id=node.id,
        )


def _reachable_from_root(nodes: tuple[Node, ...]) -> set[int]:
    """Return the ids reachable from the root by following child links.

    Args:
        nodes (tuple[Node, ...]): Nodes ordered by id, with valid child ids.

    Returns:
        set[int]: Reachable ids, including the root.
    """
    reached = {1}
    queue = deque([1])
    while queue:
        node = nodes[queue.popleft() - 1]
        for child in (node.left_child, node.right_child):
            if child is not None and child not in reached:
                reached.add(child)
                queue.append(child)
    return reached
