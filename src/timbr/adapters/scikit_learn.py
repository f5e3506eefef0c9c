"""Adapter for scikit-learn decision trees and bagged tree ensembles.

Supported estimators: `DecisionTreeClassifier`, `DecisionTreeRegressor`,
`RandomForestClassifier`, `RandomForestRegressor`, `ExtraTreesClassifier`,
and `ExtraTreesRegressor`. scikit-learn trees split on numeric features only,
so every variable is described as numeric. Node ids are scikit-learn's
0-based node indices plus one.

scikit-learn compares float32-cast features against its thresholds; timbr
compares the observation values as given, so values lying between a
threshold and its float32 rounding can route differently.
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import Any, Literal

import numpy as np
from sklearn.base import is_classifier
from sklearn.exceptions import NotFittedError
from sklearn.utils.validation import check_is_fitted

from timbr.adapters.base import assemble_tree
from timbr.exceptions import SchemaError, UnsupportedModelError
from timbr.models import TreeTable, TreeTask
from timbr.variables import VariableDescriptor, build_variable_descriptors

type MissingValueHandling = Literal["reject", "route"]

_TREE_LEAF: int = -1  # sklearn.tree._tree.TREE_LEAF
_MAX_CLASSES: int = 2


class SklearnAdapter:
    """Backend adapter for fitted scikit-learn trees and forests.

    Attributes:
        feature_names (tuple[str, ...] | None): Predictor names overriding the
            model's `feature_names_in_`.
        missing_values (MissingValueHandling): `"reject"` marks every missing
            branch `"undefined"`, so missing inputs raise `MissingValueError`.
            `"route"` follows scikit-learn's `missing_go_to_left` decisions.
    """

    def __init__(
        self,
        *,
        feature_names: Sequence[str] | None = None,
        missing_values: MissingValueHandling = "reject",
    ) -> None:
        """Initialize the adapter.

        Args:
            feature_names (Sequence[str] | None): Predictor names in column order.
                Defaults to the model's `feature_names_in_`, else `x0, x1, ...`.
            missing_values (MissingValueHandling): `"reject"` or `"route"`.

        Raises:
            ValueError: If `missing_values` is not recognized.
        """
        if missing_values not in ("reject", "route"):
            raise ValueError(f"missing_values must be 'reject' or 'route', got {missing_values!r}")
        self.feature_names = tuple(feature_names) if feature_names is not None else None
        self.missing_values: MissingValueHandling = missing_values

    def describe(self, model: Any) -> tuple[VariableDescriptor, ...]:
        """Describe every feature as a numeric variable.

        Args:
            model (Any): A fitted scikit-learn tree or forest.

        Returns:
            tuple[VariableDescriptor, ...]: One numeric descriptor per feature.

        Raises:
            SchemaError: If the number of feature names does not match the model.
        """
        _require_fitted(model)
        n_features = int(model.n_features_in_)
        names = self._feature_names(model, n_features)
        return build_variable_descriptors(
            names,
            is_numeric=[True] * n_features,
            n_categories=[1] * n_features,
            levels=[None] * n_features,
        )

    def task(self, model: Any) -> TreeTask:
        """Return `"classification"` for classifiers and `"regression"` otherwise.

        Args:
            model (Any): A fitted scikit-learn tree or forest.

        Returns:
            TreeTask: The model's task.
        """
        return "classification" if is_classifier(model) else "regression"

    def class_labels(self, model: Any) -> tuple[str, ...] | None:
        """Return the classifier's labels as strings.

        Args:
            model (Any): A fitted scikit-learn tree or forest.

        Returns:
            tuple[str, ...] | None: Labels in `classes_` order, `None` for regressors.

        Raises:
            UnsupportedModelError: For multi-output models or more than two classes.
        """
        _require_fitted(model)
        if int(getattr(model, "n_outputs_", 1)) != 1:
            raise UnsupportedModelError("Multi-output models are not supported")
        if not is_classifier(model):
            return None
        classes = [str(label) for label in np.asarray(model.classes_).tolist()]
        if len(classes) > _MAX_CLASSES:
            raise UnsupportedModelError(
                f"Classifiers with more than {_MAX_CLASSES} classes are not supported, got {len(classes)}"
            )
        return tuple(classes)

    def tree_count(self, model: Any) -> int:
        """Return 1 for a single tree, or the number of fitted estimators.

        Args:
            model (Any): A fitted scikit-learn tree or forest.

        Returns:
            int: Number of trees.
        """
        return len(_estimators(model))

    def translate_tree(
        self,
        model: Any,
        tree_index: int,
        variables: tuple[VariableDescriptor, ...],
    ) -> TreeTable:
        """Translate one fitted scikit-learn tree.

        Args:
            model (Any): A fitted scikit-learn tree or forest.
            tree_index (int): 0-based index of the estimator.
            variables (tuple[VariableDescriptor, ...]): Descriptors from `describe`.

        Returns:
            TreeTable: The canonical node table.

        Raises:
            UnsupportedModelError: If missing values should be routed but the
                installed scikit-learn does not record routing decisions.
        """
        sklearn_tree = _estimators(model)[tree_index].tree_
        labels = self.class_labels(model)
        missing_go_to_left = None
        if self.missing_values == "route":
            missing_go_to_left = getattr(sklearn_tree, "missing_go_to_left", None)
            if missing_go_to_left is None:
                raise UnsupportedModelError(
                    "This scikit-learn version does not record missing value routing",
                    tree_index=tree_index,
                )

        rows: list[dict[str, Any]] = []
        for position in range(int(sklearn_tree.node_count)):
            left = int(sklearn_tree.children_left[position])
            right = int(sklearn_tree.children_right[position])
            prediction = _node_prediction(sklearn_tree.value[position], labels)
            if left == _TREE_LEAF and right == _TREE_LEAF:
                rows.append({"id": position + 1, "status": "terminal", "prediction": prediction})
                continue
            missing_branch = "undefined"
            if missing_go_to_left is not None:
                missing_branch = "left" if missing_go_to_left[position] else "right"
            rows.append({
                "id": position + 1,
                "left_child": left + 1,
                "right_child": right + 1,
                "missing_branch": missing_branch,
                "split_variable": int(sklearn_tree.feature[position]),
                "split_threshold": float(sklearn_tree.threshold[position]),
                "status": "internal",
                "prediction": prediction,
            })
        return assemble_tree(tree_index, rows)

    def _feature_names(self, model: Any, n_features: int) -> list[str]:
        """Resolve the predictor names.

        Args:
            model (Any): A fitted scikit-learn tree or forest.
            n_features (int): Number of features the model was fitted on.

        Returns:
            list[str]: One name per feature.

        Raises:
            SchemaError: If explicit names do not match `n_features`.
        """
        if self.feature_names is not None:
            names = list(self.feature_names)
        elif getattr(model, "feature_names_in_", None) is not None:
            names = [str(name) for name in model.feature_names_in_]
        else:
            names = [f"x{index}" for index in range(n_features)]
        if len(names) != n_features:
            raise SchemaError(f"Got {len(names)} feature names for a model with {n_features} features")
        return names


# ---------------------------------------------------------------------------
# Private helpers
# ---------------------------------------------------------------------------


def _require_fitted(model: Any) -> None:
    """Raise `SchemaError` when the model has not been fitted.

    Args:
        model (Any): A scikit-learn estimator.

    Raises:
        SchemaError: If the estimator is not fitted.
    """
    try:
        check_is_fitted(model)
    except NotFittedError as exc:
        raise SchemaError(f"{type(model).__name__} is not fitted") from exc


def _estimators(model: Any) -> list[Any]:
    """Return the fitted trees of a single-tree model or a bagged forest.

    Args:
        model (Any): A fitted scikit-learn tree or forest.

    Returns:
        list[Any]: Estimators exposing a `tree_` attribute.

    Raises:
        UnsupportedModelError: If the model's estimators are not plain trees,
            e.g. boosted ensembles.
    """
    _require_fitted(model)
    estimators = list(model.estimators_) if hasattr(model, "estimators_") else [model]
    if not estimators or not all(hasattr(estimator, "tree_") for estimator in estimators):
        raise UnsupportedModelError(f"{type(model).__name__} does not hold a list of fitted decision trees")
    return estimators


def _node_prediction(node_value: np.ndarray, labels: tuple[str, ...] | None) -> float | str:
    """Return a node's prediction from its `tree_.value` entry.

    Args:
        node_value (np.ndarray): Array of shape `(1, n_classes)` for classifiers
            or `(1, 1)` for regressors.
        labels (tuple[str, ...] | None): Class labels, `None` for regressors.

    Returns:
        float | str: The majority class label, or the node mean.
    """
    if labels is None:
        return float(node_value[0, 0])
    return labels[int(np.argmax(node_value[0]))]
