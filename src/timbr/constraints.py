"""Per-variable constraints implied by a node's root-to-node split path.

Every split on a path narrows one variable: a threshold split tightens an
interval `(lower, upper]`, a factor split intersects the set of allowed
levels. Folding a path this way leaves at most one constraint per variable,
which is what the duplicate detector compares and the rule renderer prints.
"""

from __future__ import annotations

import math
from collections import deque
from collections.abc import Hashable, Sequence
from itertools import pairwise

import polars as pl
from pydantic import BaseModel, ConfigDict, Field

from timbr.models import Node, TreeTable
from timbr.variables import VariableDescriptor, VariableKind


class VariableConstraint(BaseModel):
    """The combined restriction a split path places on one variable.

    For numeric variables the bounds are raw thresholds. For ordered
    variables they are whole level codes (1-based): `upper=2` admits the
    first two levels, `lower=2` admits everything after the second level.
    For factor variables `levels` holds the 0-based indices still allowed.

    Attributes:
        variable (int): 0-based index of the variable.
        kind (VariableKind): Kind of the variable.
        lower (float | None): Exclusive lower bound, `None` when unbounded.
        upper (float | None): Inclusive upper bound, `None` when unbounded.
        levels (frozenset[int] | None): Allowed level indices for factors.
    """

    model_config = ConfigDict(frozen=True)

    variable: int = Field(ge=0, description="0-based index of the constrained variable.")
    kind: VariableKind = Field(description="Kind of the constrained variable.")
    lower: float | None = Field(default=None, description="Exclusive lower bound.")
    upper: float | None = Field(default=None, description="Inclusive upper bound.")
    levels: frozenset[int] | None = Field(default=None, description="Allowed level indices for factors.")

    def narrow(self, node: Node, *, went_left: bool, descriptor: VariableDescriptor) -> VariableConstraint:
        """Return this constraint tightened by one split on the path.

        Args:
            node (Node): An internal node splitting on this variable.
            went_left (bool): Whether the path continues to the left child.
            descriptor (VariableDescriptor): The variable's descriptor.

        Returns:
            VariableConstraint: The tightened constraint.
        """
        if node.split_levels is not None:
            allowed = self.levels if self.levels is not None else frozenset(range(len(descriptor.levels)))
            allowed = allowed & node.split_levels if went_left else allowed - node.split_levels
            return self.model_copy(update={"levels": allowed})

        threshold = float(node.split_threshold)  # type: ignore[arg-type]
        if self.kind == "ordered":
            threshold = float(math.floor(threshold))
        if went_left:
            upper = threshold if self.upper is None else min(self.upper, threshold)
            return self.model_copy(update={"upper": upper})
        lower = threshold if self.lower is None else max(self.lower, threshold)
        return self.model_copy(update={"lower": lower})

    def normalized(self, descriptor: VariableDescriptor) -> VariableConstraint | None:
        """Drop bounds that exclude nothing.

        Ordered bounds outside the level codes and factor subsets that still
        allow every level place no restriction on the variable.

        Args:
            descriptor (VariableDescriptor): The variable's descriptor.

        Returns:
            VariableConstraint | None: The normalized constraint, or `None` if
                it no longer restricts the variable.
        """
        if self.kind == "factor":
            if self.levels is not None and len(self.levels) == len(descriptor.levels):
                return None
            return self
        lower, upper = self.lower, self.upper
        if self.kind == "ordered":
            if lower is not None and lower < 1:
                lower = None
            if upper is not None and upper >= len(descriptor.levels):
                upper = None
        if lower is None and upper is None:
            return None
        return self.model_copy(update={"lower": lower, "upper": upper})

    def key(self) -> Hashable:
        """Return a hashable identity for comparing constraints.

        Returns:
            Hashable: Equal for logically equivalent constraints on the same variable.
        """
        return (self.variable, self.lower, self.upper, self.levels)

    def render(self, descriptor: VariableDescriptor, *, decimal_places: int) -> str:
        """Render the constraint using the variable's name and level labels.

        Args:
            descriptor (VariableDescriptor): The variable's descriptor.
            decimal_places (int): Decimal places for numeric thresholds.

        Returns:
            str: e.g. `"x <= 5"`, `"3 < x <= 5"`, `"grade > B"`, or
                `"colour in {blue, red}"`.
        """
        name = descriptor.name
        if self.levels is not None:
            labels = ", ".join(descriptor.levels[index] for index in sorted(self.levels))
            return f"{name} in {{{labels}}}"

        def _bound(value: float) -> str:
            if self.kind == "ordered":
                return _ordered_label(descriptor, value)
            return _format_number(value, decimal_places)

        if self.lower is not None and self.upper is not None:
            return f"{_bound(self.lower)} < {name} <= {_bound(self.upper)}"
        if self.upper is not None:
            return f"{name} <= {_bound(self.upper)}"
        return f"{name} > {_bound(self.lower)}"  # type: ignore[arg-type]

    def to_expr(self, descriptor: VariableDescriptor, dtype: pl.DataType) -> pl.Expr:
        """Build a polars filter expression selecting rows that satisfy the constraint.

        Rows with a null (or NaN) value evaluate to null and are dropped by
        `DataFrame.filter`.

        Args:
            descriptor (VariableDescriptor): The variable's descriptor.
            dtype (pl.DataType): Dtype of the variable's column in the data.

        Returns:
            pl.Expr: Boolean expression over the variable's column.
        """
        column = pl.col(descriptor.name)
        if self.kind != "numeric":
            return column.cast(pl.String).is_in(sorted(self._allowed_labels(descriptor)))
        if dtype.is_float():
            column = column.fill_nan(None)
        expr = pl.lit(True)
        if self.lower is not None:
            expr = expr & (column > self.lower)
        if self.upper is not None:
            expr = expr & (column <= self.upper)
        return expr

    def _allowed_labels(self, descriptor: VariableDescriptor) -> set[str]:
        """Return the level labels admitted by a factor or ordered constraint.

        Args:
            descriptor (VariableDescriptor): The variable's descriptor.

        Returns:
            set[str]: Admitted labels.
        """
        if self.levels is not None:
            return {descriptor.levels[index] for index in self.levels}
        lower = self.lower if self.lower is not None else 0.0
        upper = self.upper if self.upper is not None else float(len(descriptor.levels))
        return {label for code, label in enumerate(descriptor.levels, start=1) if lower < code <= upper}


type PathConstraints = dict[int, VariableConstraint]


def path_constraints(
    tree: TreeTable,
    node_id: int,
    variables: Sequence[VariableDescriptor],
) -> PathConstraints:
    """Fold the splits on the path from the root to `node_id` into one constraint per variable.

    Args:
        tree (TreeTable): The tree holding the node.
        node_id (int): 1-based node id.
        variables (Sequence[VariableDescriptor]): The forest's variables.

    Returns:
        PathConstraints: Normalized constraints keyed by variable index, in
            the order the variables first appear on the path. Empty for the root.
    """
    constraints: PathConstraints = {}
    for parent_id, child_id in pairwise(tree.path_to(node_id)):
        parent = tree.node(parent_id)
        constraints = _extend(constraints, parent, went_left=child_id == parent.left_child, variables=variables)
    return _normalize(constraints, variables)


def all_path_constraints(
    tree: TreeTable,
    variables: Sequence[VariableDescriptor],
) -> dict[int, PathConstraints]:
    """Compute `path_constraints` for every node with one pass from the root.

    Args:
        tree (TreeTable): The tree to walk.
        variables (Sequence[VariableDescriptor]): The forest's variables.

    Returns:
        dict[int, PathConstraints]: Normalized constraints for each node id.
    """
    raw: dict[int, PathConstraints] = {1: {}}
    queue = deque([1])
    while queue:
        node = tree.node(queue.popleft())
        if node.is_terminal:
            continue
        for child, went_left in ((node.left_child, True), (node.right_child, False)):
            raw[child] = _extend(raw[node.id], node, went_left=went_left, variables=variables)  # type: ignore[index]
            queue.append(child)  # type: ignore[arg-type]
    return {node_id: _normalize(constraints, variables) for node_id, constraints in sorted(raw.items())}


def constraint_key(constraints: PathConstraints) -> frozenset[Hashable]:
    """Return an order-independent identity for a set of path constraints.

    Args:
        constraints (PathConstraints): Normalized constraints of one node.

    Returns:
        frozenset[Hashable]: Equal for logically equivalent constraint sets.
    """
    return frozenset(constraint.key() for constraint in constraints.values())


# ---------------------------------------------------------------------------
# Private helpers
# ---------------------------------------------------------------------------


def _extend(
    constraints: PathConstraints,
    node: Node,
    *,
    went_left: bool,
    variables: Sequence[VariableDescriptor],
) -> PathConstraints:
    """Return a copy of `constraints` narrowed by one split.

    Args:
        constraints (PathConstraints): Constraints accumulated above `node`.
        node (Node): The internal node being passed.
        went_left (bool): Whether the path continues to the left child.
        variables (Sequence[VariableDescriptor]): The forest's variables.

    Returns:
        PathConstraints: The narrowed constraints; the input is not modified.
    """
    index: int = node.split_variable  # type: ignore[assignment]
    descriptor = variables[index]
    current = constraints.get(index) or VariableConstraint(variable=index, kind=descriptor.kind)
    return {**constraints, index: current.narrow(node, went_left=went_left, descriptor=descriptor)}


def _normalize(constraints: PathConstraints, variables: Sequence[VariableDescriptor]) -> PathConstraints:
    """Normalize each constraint and drop those that no longer restrict anything.

    Args:
        constraints (PathConstraints): Raw accumulated constraints.
        variables (Sequence[VariableDescriptor]): The forest's variables.

    Returns:
        PathConstraints: Normalized constraints in the same order.
    """
    normalized: PathConstraints = {}
    for index, constraint in constraints.items():
        result = constraint.normalized(variables[index])
        if result is not None:
            normalized[index] = result
    return normalized


def _format_number(value: float, decimal_places: int) -> str:
    """Format a threshold without a trailing `.0` for whole numbers.

    Args:
        value (float): The threshold.
        decimal_places (int): Decimal places to round to.

    Returns:
        str: e.g. `"5"` or `"2.5"`.
    """
    rounded = round(value, decimal_places)
    if rounded.is_integer():
        return str(int(rounded))
    return str(rounded)


def _ordered_label(descriptor: VariableDescriptor, code: float) -> str:
    """Return the label of an ordered level code, clamped to the known levels.

    Args:
        descriptor (VariableDescriptor): An ordered variable's descriptor.
        code (float): A whole 1-based level code.

    Returns:
        str: The level label.
    """
    position = min(max(int(code), 1), len(descriptor.levels))
    return descriptor.levels[position - 1]
