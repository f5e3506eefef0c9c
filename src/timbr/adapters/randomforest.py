"""Adapter for randomForest-style forest arrays.

The arrays mirror the `forest` component of a fitted R `randomForest`
object: one column per tree, one row per node slot, 1-based node and
variable indices, and factor splits packed into integers (bit `k` set means
level `k + 1` goes left). randomForest rejects missing values at fit time,
so every translated node has an undefined missing branch.
"""

from __future__ import annotations

from collections import Counter
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any, Final

import numpy as np

from timbr.adapters.base import assemble_tree
from timbr.exceptions import SchemaError, UnsupportedModelError
from timbr.models import TreeTable, TreeTask
from timbr.variables import VariableDescriptor, build_variable_descriptors

_TERMINAL_STATUS: Final[int] = -1
_INTERNAL_STATUSES: Final[frozenset[int]] = frozenset({1, -3})  # classification, regression
_MAX_CLASSES: Final[int] = 2


@dataclass(frozen=True)
class RandomForestArrays:
    """Raw forest arrays in randomForest's layout.

    All node arrays have shape `(n_node_slots, n_trees)`; slots past a
    tree's `ndbigtree` count are unused.

    Attributes:
        task (TreeTask): `"classification"` or `"regression"`.
        names (Sequence[str]): Predictor names in model column order.
        ncat (Sequence[int | None]): Per predictor, 1 for numeric and ordered
            predictors, else the number of factor levels.
        xlevels (Sequence[Sequence[str] | None]): Per predictor, its level
            labels, or `None` for numeric predictors.
        ndbigtree (np.ndarray): Used node count of each tree.
        nodestatus (np.ndarray): -1 terminal; 1 (classification) or -3
            (regression) internal; 0 unused.
        left_daughter (np.ndarray): 1-based left child ids, 0 for none.
        right_daughter (np.ndarray): 1-based right child ids, 0 for none.
        bestvar (np.ndarray): 1-based split variable, 0 for terminal nodes.
        xbestsplit (np.ndarray): Threshold, or packed level bitset for factors.
        nodepred (np.ndarray): Node prediction: the mean for regression, the
            1-based class code for classification (0 where not recorded).
        classes (Sequence[str] | None): Class labels for classification.
    """

    task: TreeTask
    names: Sequence[str]
    ncat: Sequence[int | None]
    xlevels: Sequence[Sequence[str] | None]
    ndbigtree: np.ndarray
    nodestatus: np.ndarray
    left_daughter: np.ndarray
    right_daughter: np.ndarray
    bestvar: np.ndarray
    xbestsplit: np.ndarray
    nodepred: np.ndarray
    classes: Sequence[str] | None = None


class RandomForestAdapter:
    """Backend adapter for `RandomForestArrays`."""

    def describe(self, model: RandomForestArrays) -> tuple[VariableDescriptor, ...]:
        """Classify every predictor from its category count and levels.

        Args:
            model (RandomForestArrays): The forest arrays.

        Returns:
            tuple[VariableDescriptor, ...]: One descriptor per predictor.

        Raises:
            SchemaError: If the per-variable metadata is incomplete.
        """
        return build_variable_descriptors(
            list(model.names),
            is_numeric=[levels is None for levels in model.xlevels],
            n_categories=list(model.ncat),
            levels=list(model.xlevels),
        )

    def task(self, model: RandomForestArrays) -> TreeTask:
        """Return the forest's task.

        Args:
            model (RandomForestArrays): The forest arrays.

        Returns:
            TreeTask: `"classification"` or `"regression"`.

        Raises:
            SchemaError: If the task is not recognized.
        """
        if model.task not in ("classification", "regression"):
            raise SchemaError(f"Unknown randomForest type {model.task!r}")
        return model.task

    def class_labels(self, model: RandomForestArrays) -> tuple[str, ...] | None:
        """Return the class labels of a classification forest.

        Args:
            model (RandomForestArrays): The forest arrays.

        Returns:
            tuple[str, ...] | None: Labels, `None` for regression.

        Raises:
            SchemaError: If a classification forest has no class labels.
            UnsupportedModelError: If it has more than two classes.
        """
        if model.task == "regression":
            return None
        if not model.classes:
            raise SchemaError("Classification forest arrays have no class labels")
        if len(model.classes) > _MAX_CLASSES:
            raise UnsupportedModelError(
                f"Classifiers with more than {_MAX_CLASSES} classes are not supported, got {len(model.classes)}"
            )
        return tuple(str(label) for label in model.classes)

    def tree_count(self, model: RandomForestArrays) -> int:
        """Return the number of trees.

        Args:
            model (RandomForestArrays): The forest arrays.

        Returns:
            int: Number of trees.

        Raises:
            SchemaError: If the node arrays disagree in shape.
        """
        arrays = {
            "nodestatus": model.nodestatus,
            "left_daughter": model.left_daughter,
            "right_daughter": model.right_daughter,
            "bestvar": model.bestvar,
            "xbestsplit": model.xbestsplit,
            "nodepred": model.nodepred,
        }
        shapes = {name: np.shape(array) for name, array in arrays.items()}
        if len(set(shapes.values())) != 1 or len(shapes["nodestatus"]) != 2:  # noqa: PLR2004
            raise SchemaError(f"Node arrays must share one 2-D shape, got {shapes}")
        n_trees = shapes["nodestatus"][1]
        if np.shape(model.ndbigtree) != (n_trees,):
            raise SchemaError(f"ndbigtree has shape {np.shape(model.ndbigtree)}, expected ({n_trees},)")
        return int(n_trees)

    def translate_tree(
        self,
        model: RandomForestArrays,
        tree_index: int,
        variables: tuple[VariableDescriptor, ...],
    ) -> TreeTable:
        """Translate one tree's column of the forest arrays.

        Args:
            model (RandomForestArrays): The forest arrays.
            tree_index (int): 0-based tree index.
            variables (tuple[VariableDescriptor, ...]): Descriptors from `describe`.

        Returns:
            TreeTable: The canonical node table.

        Raises:
            SchemaError: If the used node count is out of range, a used slot has
                an unused status, or a split references an unknown variable.
        """
        n_used = int(model.ndbigtree[tree_index])
        n_slots = int(np.shape(model.nodestatus)[0])
        if not 1 <= n_used <= n_slots:
            raise SchemaError(f"Tree reports {n_used} used nodes but has {n_slots} node slots", tree_index=tree_index)

        labels = self.class_labels(model)
        rows: list[dict[str, Any]] = []
        for slot in range(n_used):
            node_id = slot + 1
            status = int(model.nodestatus[slot, tree_index])
            prediction = _slot_prediction(model.nodepred[slot, tree_index], labels)
            if status == _TERMINAL_STATUS:
                if prediction is None:
                    raise SchemaError("Terminal node has no class prediction", tree_index=tree_index, node_id=node_id)
                rows.append({"id": node_id, "status": "terminal", "prediction": prediction})
                continue
            if status not in _INTERNAL_STATUSES:
                raise SchemaError(
                    f"Node status {status} marks an unused slot inside the tree's {n_used} used nodes",
                    tree_index=tree_index,
                    node_id=node_id,
                )
            variable_index = int(model.bestvar[slot, tree_index]) - 1
            if not 0 <= variable_index < len(variables):
                raise SchemaError(
                    f"Split variable {variable_index + 1} is outside the {len(variables)} known variables",
                    tree_index=tree_index,
                    node_id=node_id,
                )
            variable = variables[variable_index]
            split_value = float(model.xbestsplit[slot, tree_index])
            rows.append({
                "id": node_id,
                "left_child": int(model.left_daughter[slot, tree_index]) or None,
                "right_child": int(model.right_daughter[slot, tree_index]) or None,
                "missing_branch": "undefined",
                "split_variable": variable_index,
                "split_threshold": split_value if variable.is_threshold_split else None,
                "split_levels": None if variable.is_threshold_split else unpack_levels(split_value, len(variable.levels)),
                "status": "internal",
                "prediction": prediction,
            })

        if labels is not None:
            _fill_internal_class_predictions(rows, labels)
        return assemble_tree(tree_index, rows)


def unpack_levels(packed: float, n_levels: int) -> frozenset[int]:
    """Decode a packed factor split into the 0-based level indices sent left.

    Args:
        packed (float): The split value; bit `k` set sends level index `k` left.
        n_levels (int): Number of levels of the factor.

    Returns:
        frozenset[int]: Level indices going to the left child.

    Examples:
        >>> sorted(unpack_levels(5.0, 3))
        [0, 2]
    """
    bits = int(packed)
    return frozenset(index for index in range(n_levels) if (bits >> index) & 1)


def _slot_prediction(raw: Any, labels: tuple[str, ...] | None) -> float | str | None:
    """Decode one `nodepred` entry.

    Args:
        raw (Any): The stored prediction.
        labels (tuple[str, ...] | None): Class labels, `None` for regression.

    Returns:
        float | str | None: The numeric prediction, the class label, or `None`
            when a classification slot has no recorded class.

    Raises:
        SchemaError: If a class code is outside the known labels.
    """
    if labels is None:
        return float(raw)
    code = int(raw)
    if code == 0:
        return None
    if not 1 <= code <= len(labels):
        raise SchemaError(f"Class code {code} is outside the {len(labels)} class labels")
    return labels[code - 1]


def _fill_internal_class_predictions(rows: list[dict[str, Any]], labels: tuple[str, ...]) -> None:
    """Give internal classification nodes the majority class of their leaves.

    randomForest records class predictions only on terminal nodes. Each
    internal node without one takes the most common prediction among the
    leaves below it, ties going to the label listed first. randomForest
    numbers children after their parents, so one pass in reverse id order
    sees every child before its parent.

    Args:
        rows (list[dict[str, Any]]): Node field mappings ordered by id; updated in place.
        labels (tuple[str, ...]): Class labels.
    """
    leaf_votes: dict[int, Counter[str]] = {}
    for row in reversed(rows):
        node_id = row["id"]
        if row["status"] == "terminal":
            leaf_votes[node_id] = Counter({row["prediction"]: 1})
            continue
        votes: Counter[str] = Counter()
        for child in (row["left_child"], row["right_child"]):
            votes.update(leaf_votes.get(child, Counter()))
        leaf_votes[node_id] = votes
        if row["prediction"] is None:
            row["prediction"] = max(labels, key=lambda label: (votes[label], -labels.index(label)))
