"""Traversal engine: push observations through a forest and record node membership.

A single traversal records, for every observation and tree, the ids of all
nodes on the observation's path. The three output shapes (terminal node per
tree, full membership matrix, ensemble prediction) are views over that one
traversal.
"""

from __future__ import annotations

import math
from collections.abc import Iterator, Sequence
from dataclasses import dataclass, field
from typing import Literal

import numpy as np
import polars as pl
from joblib import Parallel, delayed
from loguru import logger

from timbr.config import MissingValuePolicy, get_settings
from timbr.exceptions import ColumnsNotFoundError, MissingValueError, UnknownLevelError
from timbr.labels import column_label
from timbr.models import Forest, TreeTable
from timbr.variables import VariableDescriptor

type TraversalMode = Literal["terminal", "membership", "prediction"]

# Encoded observation column: float for numeric, 1-based code for ordered,
# 0-based index for factor, None for missing.
type _EncodedColumn = list[float | int | None]

# ---------------------------------------------------------------------------
# Public result types
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class MembershipMatrix:
    """Boolean observation-by-node membership, usable as a design matrix.

    Attributes:
        values (np.ndarray): Boolean array of shape `(n_observations, n_nodes)`;
            `values[r, c]` is True when observation `r` passes through node
            `columns[c]`.
        columns (tuple[tuple[int, int], ...]): `(tree index, node id)` of each column.
        failed_rows (tuple[int, ...]): Rows that could not be traversed under
            the per-observation missing value policy; their rows are all False.
        first_row (int): Batch row number of `values[0]` when the matrix is one
            chunk of a larger batch.
    """

    values: np.ndarray
    columns: tuple[tuple[int, int], ...]
    failed_rows: tuple[int, ...] = ()
    first_row: int = 0

    @property
    def shape(self) -> tuple[int, int]:
        """`(n_observations, n_nodes)`."""
        return self.values.shape  # type: ignore[return-value]

    @property
    def labels(self) -> list[str]:
        """Stable column labels such as `"t0_n1"`; see `timbr.labels.parse_column_label`."""
        return [column_label(tree_index, node_id) for tree_index, node_id in self.columns]

    def column(self, tree_index: int, node_id: int) -> np.ndarray:
        """Return the membership vector of one node.

        Args:
            tree_index (int): 0-based tree index.
            node_id (int): 1-based node id.

        Returns:
            np.ndarray: Boolean vector with one entry per observation.

        Raises:
            KeyError: If the node is not a column of this matrix.
        """
        try:
            position = self.columns.index((tree_index, node_id))
        except ValueError:
            raise KeyError((tree_index, node_id)) from None
        return self.values[:, position]

    def drop_columns(self, mask: np.ndarray) -> MembershipMatrix:
        """Return a matrix without the columns flagged in `mask`.

        Typically used with `timbr.duplicates.forest_duplicates` to drop
        logically redundant nodes before modeling.

        Args:
            mask (np.ndarray): Boolean vector aligned with `columns`; True drops.

        Returns:
            MembershipMatrix: The reduced matrix.

        Raises:
            ValueError: If `mask` does not have one entry per column.
        """
        mask = np.asarray(mask, dtype=bool)
        if mask.shape != (len(self.columns),):
            raise ValueError(f"Mask has shape {mask.shape}, expected ({len(self.columns)},)")
        keep = ~mask
        return MembershipMatrix(
            values=self.values[:, keep],
            columns=tuple(key for key, kept in zip(self.columns, keep, strict=True) if kept),
            failed_rows=self.failed_rows,
            first_row=self.first_row,
        )

    def to_polars(self) -> pl.DataFrame:
        """Return the matrix as a DataFrame of Boolean columns named by `labels`.

        Returns:
            pl.DataFrame: One row per observation, one column per node.
        """
        return pl.DataFrame({label: self.values[:, position] for position, label in enumerate(self.labels)})


@dataclass(frozen=True)
class TreeMembership:
    """Traversal output of a single tree.

    Attributes:
        tree_index (int): 0-based tree index.
        terminal (np.ndarray): Terminal node id per observation; 0 for failed rows.
        block (np.ndarray | None): Boolean `(n_observations, n_nodes)` path
            membership, or `None` when paths were not recorded.
        failed_rows (dict[int, MissingValueError]): Rows that failed in this tree.
    """

    tree_index: int
    terminal: np.ndarray
    block: np.ndarray | None
    failed_rows: dict[int, MissingValueError] = field(default_factory=dict)


@dataclass(frozen=True)
class TraversalResult:
    """All views of one traversal of a batch through a forest.

    Attributes:
        forest (Forest): The traversed forest.
        trees (tuple[TreeMembership, ...]): Per-tree output in forest order.
        failed_rows (dict[int, MissingValueError]): Observations excluded under
            the per-observation missing value policy, with the first error each
            raised. Their rows are cleared in every view.
        first_row (int): Batch row number of the first observation.
    """

    forest: Forest
    trees: tuple[TreeMembership, ...]
    failed_rows: dict[int, MissingValueError] = field(default_factory=dict)
    first_row: int = 0

    @property
    def n_observations(self) -> int:
        """Number of traversed observations."""
        return int(self.trees[0].terminal.shape[0])

    def terminal_nodes(self) -> np.ndarray:
        """Return the terminal node id of every observation in every tree.

        Returns:
            np.ndarray: Integer array of shape `(n_observations, n_trees)`;
                0 marks failed observations.
        """
        return np.column_stack([tree.terminal for tree in self.trees])

    def membership(self) -> MembershipMatrix:
        """Return the full node membership matrix.

        Returns:
            MembershipMatrix: Columns follow `forest.column_keys()`.

        Raises:
            ValueError: If the traversal ran without recording paths.
        """
        blocks = [tree.block for tree in self.trees]
        if any(block is None for block in blocks):
            raise ValueError("Traversal ran in 'terminal' mode; node paths were not recorded")
        return MembershipMatrix(
            values=np.hstack(blocks),  # type: ignore[arg-type]
            columns=tuple(self.forest.column_keys()),
            failed_rows=tuple(sorted(self.failed_rows)),
            first_row=self.first_row,
        )

    def vote_fractions(self) -> np.ndarray:
        """Return, for classification forests, the share of trees voting for each class.

        Returns:
            np.ndarray: Float array of shape `(n_observations, n_classes)`
                ordered like `forest.class_labels`; failed rows are all zero.

        Raises:
            ValueError: If the forest is a regression forest.
        """
        labels = self.forest.class_labels
        if labels is None:
            raise ValueError("Vote fractions are only defined for classification forests")
        counts = np.zeros((self.n_observations, len(labels)), dtype=float)
        rows = np.arange(self.n_observations)
        ok = self._ok_rows()
        for table, tree in zip(self.forest.trees, self.trees, strict=True):
            class_codes = np.array([labels.index(node.prediction) for node in table.nodes])  # type: ignore[arg-type]
            counts[rows[ok], class_codes[tree.terminal[ok] - 1]] += 1.0
        return counts / self.forest.n_trees

    def predictions(self) -> pl.Series:
        """Aggregate terminal predictions across trees.

        Regression forests average the terminal values. Classification forests
        take the majority vote, breaking ties in favour of the class listed
        first in `forest.class_labels`.

        Returns:
            pl.Series: Series named `"prediction"` (Float64 or String) with null
                for failed observations.
        """
        ok = self._ok_rows()
        if self.forest.task == "classification":
            labels = self.forest.class_labels or ()
            winners = np.argmax(self.vote_fractions(), axis=1)
            values: list[str | float | None] = [
                labels[winner] if row_ok else None for winner, row_ok in zip(winners, ok, strict=True)
            ]
            return pl.Series("prediction", values, dtype=pl.String)

        totals = np.zeros(self.n_observations, dtype=float)
        for table, tree in zip(self.forest.trees, self.trees, strict=True):
            node_values = np.array([float(node.prediction) for node in table.nodes])
            totals[ok] += node_values[tree.terminal[ok] - 1]
        means = totals / self.forest.n_trees
        return pl.Series("prediction", [float(mean) if row_ok else None for mean, row_ok in zip(means, ok, strict=True)])

    def _ok_rows(self) -> np.ndarray:
        """Return a boolean mask of observations that were traversed successfully.

        Returns:
            np.ndarray: True for rows not in `failed_rows`.
        """
        ok = np.ones(self.n_observations, dtype=bool)
        for row in self.failed_rows:
            ok[row - self.first_row] = False
        return ok


# ---------------------------------------------------------------------------
# Public interface -- Traversal
# ---------------------------------------------------------------------------


def traverse(
    forest: Forest,
    observations: pl.DataFrame,
    *,
    record_paths: bool = True,
    missing_policy: MissingValuePolicy | None = None,
    n_jobs: int | None = None,
    first_row: int = 0,
) -> TraversalResult:
    """Route every observation through every tree of the forest.

    Args:
        forest (Forest): The forest to traverse.
        observations (pl.DataFrame): One row per observation with a column for
            every split variable. Numeric columns hold numbers; factor and
            ordered columns hold level labels. Null or NaN means missing.
        record_paths (bool): Record every visited node (needed for
            `membership()`). When False only terminal nodes are kept.
        missing_policy (MissingValuePolicy | None): `"strict"` raises on the
            first unroutable missing value; `"per_observation"` excludes only
            the failing observations. Defaults to the configured policy.
        n_jobs (int | None): Threads used to traverse trees in parallel.
            Defaults to the configured value.
        first_row (int): Row number of the first observation, used when the
            batch is a chunk of a larger frame.

    Returns:
        TraversalResult: The traversal, with terminal, membership, and prediction views.

    Raises:
        ValueError: If `missing_policy` is not a known policy.
        ColumnsNotFoundError: If a split variable has no column in `observations`.
        UnknownLevelError: If a categorical column holds an unknown level.
        MissingValueError: Under the strict policy, if an observation is missing
            a split value at a node with no missing branch.
    """
    settings = get_settings()
    policy = _resolve_policy(missing_policy)
    workers = n_jobs or settings.n_jobs
    columns = _encode_observations(forest, observations, first_row=first_row)
    n_rows = observations.height
    logger.debug(
        "Traversing observations",
        n_observations=n_rows,
        n_trees=forest.n_trees,
        record_paths=record_paths,
        missing_policy=policy,
        n_jobs=workers,
    )

    def _run(tree: TreeTable) -> TreeMembership:
        return _traverse_tree(
            tree,
            columns,
            forest.variables,
            n_rows=n_rows,
            record_paths=record_paths,
            missing_policy=policy,
            first_row=first_row,
        )

    if workers > 1 and forest.n_trees > 1:
        # Parallel re-raises the first failure, so no partial result is kept.
        per_tree = Parallel(n_jobs=workers, backend="threading")(delayed(_run)(tree) for tree in forest.trees)
    else:
        per_tree = [_run(tree) for tree in forest.trees]

    failed_rows: dict[int, MissingValueError] = {}
    for tree_output in per_tree:
        for row, error in tree_output.failed_rows.items():
            failed_rows.setdefault(row, error)
    if failed_rows:
        logger.warning("Observations excluded from traversal", n_failed=len(failed_rows), rows=sorted(failed_rows))
        per_tree = [_clear_rows(tree_output, failed_rows, first_row=first_row) for tree_output in per_tree]

    return TraversalResult(forest=forest, trees=tuple(per_tree), failed_rows=failed_rows, first_row=first_row)


def compute_membership(
    forest: Forest,
    observations: pl.DataFrame,
    *,
    missing_policy: MissingValuePolicy | None = None,
    n_jobs: int | None = None,
) -> MembershipMatrix:
    """Compute which nodes of which trees each observation passes through.

    Args:
        forest (Forest): The forest to traverse.
        observations (pl.DataFrame): Observations, see `traverse`.
        missing_policy (MissingValuePolicy | None): See `traverse`.
        n_jobs (int | None): See `traverse`.

    Returns:
        MembershipMatrix: Observations by `(tree, node)` membership.
    """
    return traverse(forest, observations, missing_policy=missing_policy, n_jobs=n_jobs).membership()


def predict(
    forest: Forest,
    observations: pl.DataFrame,
    *,
    mode: TraversalMode = "prediction",
    missing_policy: MissingValuePolicy | None = None,
    n_jobs: int | None = None,
) -> np.ndarray | MembershipMatrix | pl.Series:
    """Traverse a batch and return the output shape selected by `mode`.

    Args:
        forest (Forest): The forest to traverse.
        observations (pl.DataFrame): Observations, see `traverse`.
        mode (TraversalMode): `"terminal"` for the terminal node id per tree,
            `"membership"` for the full membership matrix, or `"prediction"`
            for the ensemble prediction.
        missing_policy (MissingValuePolicy | None): See `traverse`.
        n_jobs (int | None): See `traverse`.

    Returns:
        np.ndarray | MembershipMatrix | pl.Series: Terminal ids of shape
            `(n_observations, n_trees)`, a `MembershipMatrix`, or a prediction Series.

    Raises:
        ValueError: If `mode` is not recognized.
    """
    if mode not in ("terminal", "membership", "prediction"):
        raise ValueError(f"Unknown traversal mode: {mode!r}")
    result = traverse(
        forest,
        observations,
        record_paths=mode == "membership",
        missing_policy=missing_policy,
        n_jobs=n_jobs,
    )
    if mode == "terminal":
        return result.terminal_nodes()
    if mode == "membership":
        return result.membership()
    return result.predictions()


def iter_tree_membership(
    forest: Forest,
    observations: pl.DataFrame,
    *,
    missing_policy: MissingValuePolicy | None = None,
) -> Iterator[TreeMembership]:
    """Yield the membership block of one tree at a time.

    Memory stays bounded by the largest tree's block. Under the
    per-observation policy each block clears and lists only the rows that
    failed in its own tree.

    Args:
        forest (Forest): The forest to traverse.
        observations (pl.DataFrame): Observations, see `traverse`.
        missing_policy (MissingValuePolicy | None): See `traverse`.

    Yields:
        TreeMembership: Per-tree output in forest order.
    """
    policy = _resolve_policy(missing_policy)
    columns = _encode_observations(forest, observations, first_row=0)
    for tree in forest.trees:
        yield _traverse_tree(
            tree,
            columns,
            forest.variables,
            n_rows=observations.height,
            record_paths=True,
            missing_policy=policy,
            first_row=0,
        )


def iter_membership_chunks(
    forest: Forest,
    observations: pl.DataFrame,
    *,
    chunk_size: int | None = None,
    missing_policy: MissingValuePolicy | None = None,
    n_jobs: int | None = None,
) -> Iterator[MembershipMatrix]:
    """Yield the membership matrix in row chunks.

    Args:
        forest (Forest): The forest to traverse.
        observations (pl.DataFrame): Observations, see `traverse`.
        chunk_size (int | None): Rows per chunk. Defaults to the configured value.
        missing_policy (MissingValuePolicy | None): See `traverse`.
        n_jobs (int | None): See `traverse`.

    Yields:
        MembershipMatrix: One matrix per chunk; `first_row` locates it in the batch.

    Raises:
        ValueError: If `chunk_size` is not positive.
    """
    size = get_settings().chunk_size if chunk_size is None else chunk_size
    if size < 1:
        raise ValueError(f"chunk_size must be positive, got {size}")
    for start in range(0, observations.height, size):
        yield traverse(
            forest,
            observations.slice(start, size),
            missing_policy=missing_policy,
            n_jobs=n_jobs,
            first_row=start,
        ).membership()


# ---------------------------------------------------------------------------
# Private helpers -- Options
# ---------------------------------------------------------------------------


def _resolve_policy(missing_policy: MissingValuePolicy | None) -> MissingValuePolicy:
    """Return the missing value policy to apply, falling back to the configured one.

    Args:
        missing_policy (MissingValuePolicy | None): The requested policy.

    Returns:
        MissingValuePolicy: `"strict"` or `"per_observation"`.

    Raises:
        ValueError: If `missing_policy` is not a known policy.
    """
    if missing_policy is None:
        return get_settings().missing_policy
    if missing_policy not in ("strict", "per_observation"):
        raise ValueError(f"Unknown missing value policy: {missing_policy!r}")
    return missing_policy


# ---------------------------------------------------------------------------
# Private helpers -- Observation encoding
# ---------------------------------------------------------------------------


def _encode_observations(forest: Forest, observations: pl.DataFrame, *, first_row: int) -> list[_EncodedColumn | None]:
    """Encode the split-variable columns of a batch for routing.

    Args:
        forest (Forest): The forest to be traversed.
        observations (pl.DataFrame): The batch.
        first_row (int): Row number of the first observation, for error messages.

    Returns:
        list[_EncodedColumn | None]: One encoded column per forest variable;
            `None` for variables no tree splits on.

    Raises:
        ColumnsNotFoundError: If a split variable has no column.
        UnknownLevelError: If a categorical column holds an unknown level.
    """
    used = sorted({
        node.split_variable
        for tree in forest.trees
        for node in tree.nodes
        if node.split_variable is not None
    })
    missing_columns = [
        forest.variables[index].name for index in used if forest.variables[index].name not in observations.columns
    ]
    if missing_columns:
        raise ColumnsNotFoundError(missing_columns=missing_columns, available_columns=observations.columns)

    encoded: list[_EncodedColumn | None] = [None] * len(forest.variables)
    for index in used:
        variable = forest.variables[index]
        encoded[index] = _encode_column(variable, observations[variable.name].to_list(), first_row=first_row)
    return encoded


def _encode_column(variable: VariableDescriptor, values: Sequence[object], *, first_row: int) -> _EncodedColumn:
    """Encode one observation column according to its variable's kind.

    Args:
        variable (VariableDescriptor): The column's variable.
        values (Sequence[object]): Raw column values.
        first_row (int): Row number of `values[0]`, for error messages.

    Returns:
        _EncodedColumn: Floats for numeric, 1-based codes for ordered, 0-based
            indices for factor, `None` for missing entries.

    Raises:
        UnknownLevelError: If a categorical value is not one of the levels.
    """
    if variable.kind == "numeric":
        return [None if _is_missing(value) else float(value) for value in values]  # type: ignore[arg-type]

    offset = 1 if variable.kind == "ordered" else 0
    codes = {label: position + offset for position, label in enumerate(variable.levels)}
    encoded: _EncodedColumn = []
    for row, value in enumerate(values, start=first_row):
        if _is_missing(value):
            encoded.append(None)
            continue
        code = codes.get(str(value))
        if code is None:
            raise UnknownLevelError(
                f"Level {value!r} is not one of {list(variable.levels)}",
                variable=variable.name,
                row=row,
                value=value,
            )
        encoded.append(code)
    return encoded


def _is_missing(value: object) -> bool:
    """Return True for null and NaN values.

    Args:
        value (object): A raw observation value.

    Returns:
        bool: Whether the value counts as missing.
    """
    return value is None or (isinstance(value, float) and math.isnan(value))


# ---------------------------------------------------------------------------
# Private helpers -- Routing
# ---------------------------------------------------------------------------


def _traverse_tree(
    tree: TreeTable,
    columns: list[_EncodedColumn | None],
    variables: Sequence[VariableDescriptor],
    *,
    n_rows: int,
    record_paths: bool,
    missing_policy: MissingValuePolicy,
    first_row: int,
) -> TreeMembership:
    """Route every observation through one tree.

    Args:
        tree (TreeTable): The tree.
        columns (list[_EncodedColumn | None]): Encoded observation columns.
        variables (Sequence[VariableDescriptor]): The forest's variables.
        n_rows (int): Number of observations.
        record_paths (bool): Whether to fill the membership block.
        missing_policy (MissingValuePolicy): How to treat unroutable observations.
        first_row (int): Row number of the first observation.

    Returns:
        TreeMembership: Terminal ids and, optionally, the membership block.

    Raises:
        MissingValueError: Under the strict policy.
    """
    terminal = np.zeros(n_rows, dtype=np.int64)
    block = np.zeros((n_rows, len(tree)), dtype=bool) if record_paths else None
    failed_rows: dict[int, MissingValueError] = {}
    for position in range(n_rows):
        try:
            path = _route(tree, columns, variables, position=position, first_row=first_row)
        except MissingValueError as exc:
            if missing_policy == "strict":
                raise
            failed_rows[first_row + position] = exc
            continue
        terminal[position] = path[-1]
        if block is not None:
            block[position, [node_id - 1 for node_id in path]] = True
    return TreeMembership(tree_index=tree.index, terminal=terminal, block=block, failed_rows=failed_rows)


def _route(
    tree: TreeTable,
    columns: list[_EncodedColumn | None],
    variables: Sequence[VariableDescriptor],
    *,
    position: int,
    first_row: int,
) -> list[int]:
    """Return the ids of the nodes one observation visits, root first.

    Args:
        tree (TreeTable): The tree.
        columns (list[_EncodedColumn | None]): Encoded observation columns.
        variables (Sequence[VariableDescriptor]): The forest's variables.
        position (int): Position of the observation in the batch.
        first_row (int): Row number of the first observation.

    Returns:
        list[int]: Visited node ids ending at a terminal node.

    Raises:
        MissingValueError: If a split value is missing and the node has no
            missing branch.
    """
    node = tree.root
    path = [node.id]
    while not node.is_terminal:
        value = columns[node.split_variable][position]  # type: ignore[index]
        if value is None:
            if node.missing_branch == "undefined":
                raise MissingValueError(
                    "Missing split value and the node has no missing branch",
                    tree_index=tree.index,
                    node_id=node.id,
                    variable=variables[node.split_variable].name,  # type: ignore[index]
                    row=first_row + position,
                )
            child = node.left_child if node.missing_branch == "left" else node.right_child
        else:
            child = node.left_child if node.goes_left(value) else node.right_child
        node = tree.node(child)  # type: ignore[arg-type]
        path.append(node.id)
    return path


def _clear_rows(
    tree_output: TreeMembership,
    failed_rows: dict[int, MissingValueError],
    *,
    first_row: int,
) -> TreeMembership:
    """Return a copy of a tree's output with the failed observations cleared.

    Args:
        tree_output (TreeMembership): Output of one tree.
        failed_rows (dict[int, MissingValueError]): Failed rows across all trees.
        first_row (int): Row number of the first observation.

    Returns:
        TreeMembership: Output with failed rows zeroed in every array.
    """
    positions = [row - first_row for row in failed_rows]
    terminal = tree_output.terminal.copy()
    terminal[positions] = 0
    block = None
    if tree_output.block is not None:
        block = tree_output.block.copy()
        block[positions, :] = False
    return TreeMembership(
        tree_index=tree_output.tree_index,
        terminal=terminal,
        block=block,
        failed_rows=tree_output.failed_rows,
    )
