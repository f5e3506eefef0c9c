"""Rule rendering: describe a node's split path as a readable predicate."""

from __future__ import annotations

from collections import Counter
from collections.abc import Sequence
from functools import reduce
from typing import Annotated, Literal

import polars as pl
from pydantic import BaseModel, Field

from timbr.config import get_settings
from timbr.constraints import PathConstraints, all_path_constraints, path_constraints
from timbr.exceptions import ColumnsNotFoundError
from timbr.labels import column_label
from timbr.models import Forest, Node, TreeTable
from timbr.variables import VariableDescriptor

ROOT_RULE_TEXT = "(all observations)"

# ---------------------------------------------------------------------------
# Public models
# ---------------------------------------------------------------------------


class ClassificationStatistics(BaseModel):
    """Response summary of the observations satisfying a classification rule.

    Attributes:
        task_type (Literal["classification"]): Discriminator field; always
            `"classification"`.
        samples (int): Number of observations satisfying the rule.
        class_proportions (dict[str, float]): Share of each observed class
            among those observations, keyed by class label.
    """

    task_type: Literal["classification"] = Field(description='Discriminator field. Always "classification".')
    samples: int = Field(ge=0, description="Number of observations satisfying the rule.")
    class_proportions: dict[str, float] = Field(
        description="Share of each observed class among the observations satisfying the rule.",
    )

    def __str__(self) -> str:
        """Return e.g. `"n = 12, no = 0.25, yes = 0.75"`.

        Returns:
            str: Sample count followed by class proportions.
        """
        proportions = ", ".join(f"{label} = {share:.4g}" for label, share in self.class_proportions.items())
        return f"n = {self.samples}, {proportions}" if proportions else f"n = {self.samples}"


class RegressionStatistics(BaseModel):
    """Response summary of the observations satisfying a regression rule.

    Attributes:
        task_type (Literal["regression"]): Discriminator field; always `"regression"`.
        samples (int): Number of observations satisfying the rule.
        mean (float | None): Mean response, `None` when no observation qualifies.
        std (float | None): Population standard deviation of the response.
    """

    task_type: Literal["regression"] = Field(description='Discriminator field. Always "regression".')
    samples: int = Field(ge=0, description="Number of observations satisfying the rule.")
    mean: float | None = Field(description="Mean response of the observations satisfying the rule.")
    std: float | None = Field(description="Population standard deviation of that response.")

    def __str__(self) -> str:
        """Return e.g. `"n = 12, mean = 3.5"`.

        Returns:
            str: Sample count followed by the mean response.
        """
        if self.mean is None:
            return f"n = {self.samples}"
        return f"n = {self.samples}, mean = {self.mean:.4g}"


type RuleStatistics = Annotated[
    ClassificationStatistics | RegressionStatistics,
    Field(discriminator="task_type"),
]


class NodeRule(BaseModel):
    """The predicate describing one node, with optional statistics.

    Attributes:
        tree_index (int): 0-based tree index.
        node_id (int): 1-based node id.
        constraints (list[str]): One rendered constraint per variable on the
            path, e.g. `["x <= 5", "colour in {blue, red}"]`. Empty for the root.
        prediction (float | str): The node's prediction.
        is_terminal (bool): Whether the node is a leaf.
        statistics (RuleStatistics | None): Summary against supplied data.

    Examples:
        >>> rule = NodeRule(tree_index=0, node_id=2, constraints=["x <= 3"],
        ...                 prediction="yes", is_terminal=True)
        >>> str(rule)
        'x <= 3'
    """

    tree_index: int = Field(ge=0, description="0-based tree index.")
    node_id: int = Field(ge=1, description="1-based node id.")
    constraints: list[str] = Field(description="One rendered constraint per variable on the path.")
    prediction: float | str = Field(description="The node's prediction.")
    is_terminal: bool = Field(description="Whether the node is a leaf.")
    statistics: RuleStatistics | None = Field(default=None, description="Summary against supplied data.")

    @property
    def predicate(self) -> str:
        """The constraints joined with `&`, or `(all observations)` for the root."""
        return " & ".join(self.constraints) if self.constraints else ROOT_RULE_TEXT

    def __str__(self) -> str:
        """Return the predicate, followed by the statistics in brackets when present.

        Returns:
            str: e.g. `"x <= 3 & y in {a} [n = 4, mean = 1.5]"`.
        """
        if self.statistics is None:
            return self.predicate
        return f"{self.predicate} [{self.statistics}]"


# ---------------------------------------------------------------------------
# Public interface
# ---------------------------------------------------------------------------


def node_rule(
    tree: TreeTable,
    node_id: int,
    variables: Sequence[VariableDescriptor],
    *,
    data: pl.DataFrame | None = None,
    response: pl.Series | Sequence[float | str] | None = None,
    decimal_places: int | None = None,
) -> NodeRule:
    """Describe the path from the root to a node as one constraint per variable.

    A variable split on several times along the path is rendered once, as
    the tightest combined constraint.

    Args:
        tree (TreeTable): The tree holding the node.
        node_id (int): 1-based node id.
        variables (Sequence[VariableDescriptor]): The forest's variables.
        data (pl.DataFrame | None): Observations to summarise the rule against.
        response (pl.Series | Sequence[float | str] | None): Response values
            aligned with `data`. Required when `data` is given.
        decimal_places (int | None): Decimal places for numeric thresholds.
            Defaults to the configured value.

    Returns:
        NodeRule: The rule, with statistics when `data` and `response` are given.

    Raises:
        KeyError: If the tree has no node with this id.
        ValueError: If only one of `data` and `response` is given, or their
            lengths differ.
        ColumnsNotFoundError: If a constrained variable has no column in `data`.
    """
    constraints = path_constraints(tree, node_id, variables)
    return _build_rule(
        tree,
        tree.node(node_id),
        constraints,
        variables,
        data=data,
        response=response,
        decimal_places=decimal_places,
    )


def render_rule(
    tree: TreeTable,
    node_id: int,
    variables: Sequence[VariableDescriptor],
    *,
    data: pl.DataFrame | None = None,
    response: pl.Series | Sequence[float | str] | None = None,
    decimal_places: int | None = None,
) -> str:
    """Render a node's rule as text.

    Args:
        tree (TreeTable): The tree holding the node.
        node_id (int): 1-based node id.
        variables (Sequence[VariableDescriptor]): The forest's variables.
        data (pl.DataFrame | None): See `node_rule`.
        response (pl.Series | Sequence[float | str] | None): See `node_rule`.
        decimal_places (int | None): See `node_rule`.

    Returns:
        str: e.g. `"x <= 5 & y in {a, b}"` or, with data,
            `"x <= 5 & y in {a, b} [n = 40, mean = 2.1]"`.

    Examples:
        >>> render_rule(forest.trees[0], 4, forest.variables)  # doctest: +SKIP
        'x > 3 & colour in {red}'
    """
    return str(
        node_rule(
            tree,
            node_id,
            variables,
            data=data,
            response=response,
            decimal_places=decimal_places,
        )
    )


def forest_rules(
    forest: Forest,
    *,
    data: pl.DataFrame | None = None,
    response: pl.Series | Sequence[float | str] | None = None,
    terminal_only: bool = False,
    decimal_places: int | None = None,
) -> dict[str, NodeRule]:
    """Describe every node of every tree, keyed by membership column label.

    Args:
        forest (Forest): The forest to describe.
        data (pl.DataFrame | None): See `node_rule`.
        response (pl.Series | Sequence[float | str] | None): See `node_rule`.
        terminal_only (bool): Only describe leaves.
        decimal_places (int | None): See `node_rule`.

    Returns:
        dict[str, NodeRule]: Rules keyed by labels such as `"t0_n3"`, in forest order.
    """
    rules: dict[str, NodeRule] = {}
    for tree in forest.trees:
        for node_id, constraints in all_path_constraints(tree, forest.variables).items():
            node = tree.node(node_id)
            if terminal_only and not node.is_terminal:
                continue
            rules[column_label(tree.index, node_id)] = _build_rule(
                tree,
                node,
                constraints,
                forest.variables,
                data=data,
                response=response,
                decimal_places=decimal_places,
            )
    return rules


# ---------------------------------------------------------------------------
# Private helpers
# ---------------------------------------------------------------------------


def _build_rule(
    tree: TreeTable,
    node: Node,
    constraints: PathConstraints,
    variables: Sequence[VariableDescriptor],
    *,
    data: pl.DataFrame | None,
    response: pl.Series | Sequence[float | str] | None,
    decimal_places: int | None,
) -> NodeRule:
    """Assemble a `NodeRule` from a node's folded path constraints.

    Args:
        tree (TreeTable): The tree holding the node.
        node (Node): The node.
        constraints (PathConstraints): Normalized constraints of the node's path.
        variables (Sequence[VariableDescriptor]): The forest's variables.
        data (pl.DataFrame | None): Observations to summarise against.
        response (pl.Series | Sequence[float | str] | None): Aligned response values.
        decimal_places (int | None): Decimal places for numeric thresholds.

    Returns:
        NodeRule: The assembled rule.
    """
    places = decimal_places if decimal_places is not None else get_settings().threshold_decimal_places
    rendered = [
        constraint.render(variables[index], decimal_places=places) for index, constraint in constraints.items()
    ]
    statistics = None
    if data is not None or response is not None:
        statistics = _summarise(
            constraints,
            variables,
            data=data,
            response=response,
            classification=isinstance(node.prediction, str),
        )
    return NodeRule(
        tree_index=tree.index,
        node_id=node.id,
        constraints=rendered,
        prediction=node.prediction,
        is_terminal=node.is_terminal,
        statistics=statistics,
    )


def _summarise(
    constraints: PathConstraints,
    variables: Sequence[VariableDescriptor],
    *,
    data: pl.DataFrame | None,
    response: pl.Series | Sequence[float | str] | None,
    classification: bool,
) -> ClassificationStatistics | RegressionStatistics:
    """Summarise the response of the rows satisfying every constraint.

    Args:
        constraints (PathConstraints): Normalized path constraints.
        variables (Sequence[VariableDescriptor]): The forest's variables.
        data (pl.DataFrame | None): Observations.
        response (pl.Series | Sequence[float | str] | None): Aligned response values.
        classification (bool): Whether to report class proportions instead of a mean.

    Returns:
        ClassificationStatistics | RegressionStatistics: The summary.

    Raises:
        ValueError: If only one of `data` and `response` is given or their lengths differ.
        ColumnsNotFoundError: If a constrained variable has no column in `data`.
    """
    if data is None or response is None:
        raise ValueError("Rule statistics require both data and response")
    response_series = response if isinstance(response, pl.Series) else pl.Series("response", list(response))
    if response_series.len() != data.height:
        raise ValueError(f"response has {response_series.len()} values but data has {data.height} rows")

    names = [variables[index].name for index in constraints]
    missing_columns = [name for name in names if name not in data.columns]
    if missing_columns:
        raise ColumnsNotFoundError(missing_columns=missing_columns, available_columns=data.columns)

    if constraints:
        expressions = [
            constraint.to_expr(variables[index], data.schema[variables[index].name])
            for index, constraint in constraints.items()
        ]
        mask = data.select(reduce(lambda left, right: left & right, expressions).alias("mask"))["mask"]
        subset = response_series.filter(mask.fill_null(False))
    else:
        subset = response_series

    if classification:
        counts = Counter(str(label) for label in subset.drop_nulls().to_list())
        total = sum(counts.values())
        proportions = {label: counts[label] / total for label in sorted(counts)}
        return ClassificationStatistics(task_type="classification", samples=subset.len(), class_proportions=proportions)

    values = subset.drop_nulls().cast(pl.Float64)
    return RegressionStatistics(
        task_type="regression",
        samples=subset.len(),
        mean=values.mean() if values.len() else None,  # type: ignore[arg-type]
        std=values.std(ddof=0) if values.len() else None,  # type: ignore[arg-type]
    )
