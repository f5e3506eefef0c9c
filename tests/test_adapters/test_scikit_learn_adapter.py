"""Tests for the scikit-learn adapter: translated forests must route like the fitted models."""

from __future__ import annotations

import numpy as np
import polars as pl
import pytest
from pytest_check import check
from sklearn.ensemble import (
    ExtraTreesRegressor,
    GradientBoostingRegressor,
    RandomForestClassifier,
    RandomForestRegressor,
)
from sklearn.tree import DecisionTreeClassifier, DecisionTreeRegressor

from timbr.adapters import SklearnAdapter, build_forest
from timbr.exceptions import MissingValueError, SchemaError, UnsupportedModelError
from timbr.traversal import predict, traverse

# ---------------------------------------------------------------------------
# Translation
# ---------------------------------------------------------------------------


class TestTranslateTree:
    """Tests for the shape of translated node tables."""

    def test_stump_translation(self) -> None:
        """A depth-one tree becomes a root with two leaves."""
        # Arrange
        features = np.array([[1.0], [2.0], [3.0], [10.0], [11.0], [12.0]])
        target = np.array([1.0, 1.0, 1.0, 5.0, 5.0, 5.0])
        model = DecisionTreeRegressor(max_depth=1, random_state=0).fit(features, target)

        # Act
        forest = build_forest(model, kind="sklearn")

        # Assert
        root, left, right = forest.trees[0].nodes
        with check:
            assert forest.model_kind == "sklearn"
        with check:
            assert forest.task == "regression"
        with check:
            assert forest.variables[0].name == "x0"
        with check:
            assert (root.left_child, root.right_child) == (2, 3)
        with check:
            assert root.split_threshold == pytest.approx(6.5)
        with check:
            assert root.missing_branch == "undefined"
        with check:
            assert (left.prediction, right.prediction) == (pytest.approx(1.0), pytest.approx(5.0))
        with check:
            assert root.prediction == pytest.approx(3.0)

    def test_feature_names_option(self) -> None:
        """Explicit feature names replace the generated ones."""
        # Arrange
        features, target = _integer_regression_data()
        model = DecisionTreeRegressor(max_depth=2, random_state=0).fit(features, target)

        # Act
        forest = build_forest(model, kind="sklearn", feature_names=["age", "income", "tenure"])

        # Assert
        with check:
            assert [variable.name for variable in forest.variables] == ["age", "income", "tenure"]
        with check:
            assert all(variable.kind == "numeric" for variable in forest.variables)

    def test_wrong_number_of_feature_names(self) -> None:
        """Feature names must match the fitted feature count."""
        features, target = _integer_regression_data()
        model = DecisionTreeRegressor(max_depth=2, random_state=0).fit(features, target)
        with pytest.raises(SchemaError, match="3 features"):
            build_forest(model, kind="sklearn", feature_names=["age"])

    def test_binary_classifier_labels(self) -> None:
        """Class labels are kept as strings in `classes_` order."""
        # Arrange
        features, target = _integer_classification_data()
        model = DecisionTreeClassifier(max_depth=3, random_state=0).fit(features, target)

        # Act
        forest = build_forest(model, kind="sklearn")

        # Assert
        with check:
            assert forest.task == "classification"
        with check:
            assert forest.class_labels == ("0", "1")
        with check:
            assert {node.prediction for node in forest.trees[0].nodes} <= {"0", "1"}


# ---------------------------------------------------------------------------
# Agreement with scikit-learn
# ---------------------------------------------------------------------------


class TestAgreementWithScikitLearn:
    """Translated forests reproduce the fitted models' routing."""

    def test_random_forest_terminal_nodes_match_apply(self) -> None:
        """Terminal ids equal scikit-learn's leaf indices plus one."""
        # Arrange
        features, target = _integer_classification_data()
        model = RandomForestClassifier(n_estimators=5, max_depth=4, random_state=0).fit(features, target)
        observations = _as_frame(features)
        expected = np.column_stack([estimator.apply(features) for estimator in model.estimators_]) + 1

        # Act
        forest = build_forest(model, kind="sklearn")
        terminal = predict(forest, observations, mode="terminal")

        # Assert
        assert np.array_equal(terminal, expected)

    def test_regressor_prediction_matches_predict(self) -> None:
        """The ensemble mean equals the forest regressor's prediction."""
        # Arrange
        features, target = _integer_regression_data()
        model = RandomForestRegressor(n_estimators=7, max_depth=5, random_state=0).fit(features, target)

        # Act
        forest = build_forest(model, kind="sklearn")
        predictions = predict(forest, _as_frame(features))

        # Assert
        assert np.allclose(predictions.to_numpy(), model.predict(features))

    def test_extra_trees_supported(self) -> None:
        """Extremely randomized trees translate the same way."""
        # Arrange
        features, target = _integer_regression_data()
        model = ExtraTreesRegressor(n_estimators=3, max_depth=4, random_state=0).fit(features, target)

        # Act
        forest = build_forest(model, kind="sklearn")
        terminal = predict(forest, _as_frame(features), mode="terminal")

        # Assert
        expected = np.column_stack([estimator.apply(features) for estimator in model.estimators_]) + 1
        with check:
            assert forest.n_trees == 3
        with check:
            assert np.array_equal(terminal, expected)

    def test_membership_rows_contain_path_to_leaf(self) -> None:
        """Each row marks exactly the nodes on the decision path."""
        # Arrange
        features, target = _integer_classification_data()
        model = DecisionTreeClassifier(max_depth=4, random_state=0).fit(features, target)
        expected = model.decision_path(features).toarray().astype(bool)

        # Act
        forest = build_forest(model, kind="sklearn")
        matrix = predict(forest, _as_frame(features), mode="membership")

        # Assert
        assert np.array_equal(matrix.values, expected)  # type: ignore[union-attr]


# ---------------------------------------------------------------------------
# Missing values
# ---------------------------------------------------------------------------


class TestMissingValues:
    """Tests for the two missing value modes."""

    def test_reject_mode_raises_on_missing(self) -> None:
        """By default missing inputs cannot be routed."""
        # Arrange
        features, target = _integer_regression_data()
        model = DecisionTreeRegressor(max_depth=2, random_state=0).fit(features, target)
        forest = build_forest(model, kind="sklearn")
        observations = pl.DataFrame(
            {"x0": [None], "x1": [None], "x2": [None]},
            schema={"x0": pl.Float64, "x1": pl.Float64, "x2": pl.Float64},
        )

        # Act / Assert
        with pytest.raises(MissingValueError) as exc_info:
            traverse(forest, observations)
        with check:
            assert exc_info.value.node_id == 1

    def test_route_mode_follows_missing_go_to_left(self) -> None:
        """Route mode sends missing values where scikit-learn would."""
        # Arrange
        rng = np.random.default_rng(0)
        features = rng.integers(0, 10, size=(60, 2)).astype(float)
        target = features[:, 0] + rng.normal(size=60)
        features[::7, 0] = np.nan
        model = DecisionTreeRegressor(max_depth=3, random_state=0).fit(features, target)

        # Act
        forest = build_forest(model, kind="sklearn", missing_values="route")
        terminal = predict(forest, _as_frame(features), mode="terminal")

        # Assert
        with check:
            assert all(node.missing_branch != "undefined" for node in forest.trees[0].nodes if not node.is_terminal)
        with check:
            assert np.array_equal(terminal[:, 0], model.apply(features) + 1)

    def test_unknown_mode_rejected(self) -> None:
        """Only 'reject' and 'route' are accepted."""
        with pytest.raises(ValueError, match="missing_values"):
            SklearnAdapter(missing_values="impute")  # type: ignore[arg-type]


# ---------------------------------------------------------------------------
# Declined models
# ---------------------------------------------------------------------------


class TestDeclinedModels:
    """Models outside the supported feature set fail the build."""

    def test_multiclass_rejected(self) -> None:
        """Classifiers with more than two classes are declined."""
        # Arrange
        features, _ = _integer_classification_data()
        target = np.arange(features.shape[0]) % 3
        model = RandomForestClassifier(n_estimators=2, random_state=0).fit(features, target)

        # Act / Assert
        with pytest.raises(UnsupportedModelError, match="more than 2 classes"):
            build_forest(model, kind="sklearn")

    def test_multi_output_rejected(self) -> None:
        """Multi-output regressors are declined."""
        features, target = _integer_regression_data()
        model = DecisionTreeRegressor(max_depth=2).fit(features, np.column_stack([target, target]))
        with pytest.raises(UnsupportedModelError, match="Multi-output"):
            build_forest(model, kind="sklearn")

    def test_boosted_ensemble_rejected(self) -> None:
        """Boosted ensembles do not hold a flat list of trees."""
        features, target = _integer_regression_data()
        model = GradientBoostingRegressor(n_estimators=2, random_state=0).fit(features, target)
        with pytest.raises(UnsupportedModelError, match="list of fitted decision trees"):
            build_forest(model, kind="sklearn")

    def test_unfitted_model_rejected(self) -> None:
        """Unfitted estimators have no trees to translate."""
        with pytest.raises(SchemaError, match="not fitted"):
            build_forest(RandomForestRegressor(), kind="sklearn")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _integer_regression_data() -> tuple[np.ndarray, np.ndarray]:
    """Integer-valued features so thresholds fall halfway between observed values.

    Returns:
        tuple[np.ndarray, np.ndarray]: Features of shape (80, 3) and a continuous target.
    """
    rng = np.random.default_rng(42)
    features = rng.integers(0, 20, size=(80, 3)).astype(float)
    target = 2.0 * features[:, 0] - features[:, 1] + rng.normal(scale=0.5, size=80)
    return features, target


def _integer_classification_data() -> tuple[np.ndarray, np.ndarray]:
    """Integer-valued features with a binary target.

    Returns:
        tuple[np.ndarray, np.ndarray]: Features of shape (80, 3) and 0/1 labels.
    """
    rng = np.random.default_rng(7)
    features = rng.integers(0, 20, size=(80, 3)).astype(float)
    target = ((features[:, 0] + features[:, 2]) > 20).astype(int)
    return features, target


def _as_frame(features: np.ndarray) -> pl.DataFrame:
    """Wrap a feature matrix in a DataFrame using the adapter's default names.

    Args:
        features (np.ndarray): Feature matrix.

    Returns:
        pl.DataFrame: One Float64 column `x<i>` per feature.
    """
    return pl.DataFrame({f"x{index}": features[:, index] for index in range(features.shape[1])})
