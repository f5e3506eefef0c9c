"""Predictor descriptors: how each variable is split on and which levels it has."""

from __future__ import annotations

from collections.abc import Sequence
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from timbr.exceptions import SchemaError

type VariableKind = Literal["factor", "ordered", "numeric"]

# Index is the sum of the two backend signals.
_KIND_BY_SIGNAL_SUM: tuple[VariableKind, VariableKind, VariableKind] = ("factor", "ordered", "numeric")


class VariableDescriptor(BaseModel):
    """How a tree model treats one predictor column.

    Numeric and ordered variables are split on a threshold (left iff
    `value <= threshold`); factor variables are split on a subset of levels
    (left iff the level is in the subset). Ordered variables are thresholded
    on their 1-based level codes.

    Attributes:
        name (str): Column name of the predictor in observation frames.
        kind (VariableKind): `"factor"`, `"ordered"`, or `"numeric"`.
        levels (tuple[str, ...]): Level labels in code order; empty for
            numeric variables.
        cardinality (int): Number of levels used by the model, 1 for numeric.

    Examples:
        >>> colour = VariableDescriptor(name="colour", kind="factor", levels=("blue", "red"))
        >>> colour.cardinality
        2
        >>> colour.level_index("red")
        1
    """

    model_config = ConfigDict(frozen=True)

    name: str = Field(min_length=1, description="Column name of the predictor.")
    kind: VariableKind = Field(description="How the model splits this variable.")
    levels: tuple[str, ...] = Field(
        default=(),
        description="Level labels in code order; empty for numeric variables.",
    )
    cardinality: int = Field(default=0, ge=0, description="Number of levels used by the model; 1 for numeric.")

    @model_validator(mode="before")
    @classmethod
    def _default_cardinality(cls, data: Any) -> Any:
        """Default the cardinality to 1 for numeric variables and to the level count otherwise.

        Args:
            data (Any): Raw constructor input.

        Returns:
            Any: The input with `cardinality` filled in when it was omitted.
        """
        if isinstance(data, dict) and not data.get("cardinality"):
            levels = data.get("levels") or ()
            data = {**data, "cardinality": 1 if data.get("kind") == "numeric" else len(levels)}
        return data

    @model_validator(mode="after")
    def _validate_levels_match_kind(self) -> VariableDescriptor:
        """Check the levels and cardinality against the kind.

        Returns:
            VariableDescriptor: The validated model instance.

        Raises:
            ValueError: If a numeric variable has levels, a categorical variable
                has none, the levels repeat, or the cardinality is inconsistent.
        """
        if self.kind == "numeric":
            if self.levels:
                raise ValueError(f"Numeric variable '{self.name}' must not have levels")
            if self.cardinality != 1:
                raise ValueError(f"Numeric variable '{self.name}' must have cardinality 1")
            return self
        if not self.levels:
            raise ValueError(f"{self.kind.capitalize()} variable '{self.name}' requires at least one level")
        if len(set(self.levels)) != len(self.levels):
            raise ValueError(f"Variable '{self.name}' has repeated levels: {list(self.levels)}")
        if not 1 <= self.cardinality <= len(self.levels):
            raise ValueError(
                f"Variable '{self.name}' cardinality {self.cardinality} is outside 1..{len(self.levels)}"
            )
        return self

    @property
    def is_threshold_split(self) -> bool:
        """Whether splits on this variable compare against a threshold."""
        return self.kind != "factor"

    def level_index(self, level: str) -> int:
        """Return the 0-based code of a level label.

        Args:
            level (str): A level label.

        Returns:
            int: Position of `level` in `levels`.

        Raises:
            ValueError: If `level` is not one of the variable's levels.
        """
        return self.levels.index(level)


def classify_variable(*, is_numeric: bool | None, single_category: bool | None) -> VariableKind:
    """Derive a variable's kind from two backend-reported flags.

    The flags are summed as binary signals: 0 -> factor, 1 -> ordered,
    2 -> numeric. `single_category` is the backend's "one effective category"
    flag (randomForest reports `ncat == 1` for numeric and ordered predictors).

    Args:
        is_numeric (bool | None): Whether the variable's values are numeric.
        single_category (bool | None): Whether the model encodes the variable
            with a single effective category.

    Returns:
        VariableKind: The derived kind.

    Raises:
        SchemaError: If either flag is missing.

    Examples:
        >>> classify_variable(is_numeric=True, single_category=True)
        'numeric'
        >>> classify_variable(is_numeric=False, single_category=True)
        'ordered'
        >>> classify_variable(is_numeric=False, single_category=False)
        'factor'
    """
    if is_numeric is None or single_category is None:
        raise SchemaError("Variable metadata is missing the numeric or category flag")
    return _KIND_BY_SIGNAL_SUM[int(bool(is_numeric)) + int(bool(single_category))]


def build_variable_descriptors(
    names: Sequence[str],
    *,
    is_numeric: Sequence[bool | None],
    n_categories: Sequence[int | None],
    levels: Sequence[Sequence[str] | None],
) -> tuple[VariableDescriptor, ...]:
    """Build the descriptor sequence for every predictor of a model.

    Args:
        names (Sequence[str]): Predictor names in model column order.
        is_numeric (Sequence[bool | None]): Per-variable "values are numeric" flag.
        n_categories (Sequence[int | None]): Per-variable effective category
            count reported by the model (1 for numeric and ordered predictors).
        levels (Sequence[Sequence[str] | None]): Per-variable level labels, or
            `None` for numeric predictors.

    Returns:
        tuple[VariableDescriptor, ...]: One descriptor per predictor.

    Raises:
        SchemaError: If the metadata sequences differ in length, a flag or
            category count is missing, or a categorical variable has no levels.
    """
    lengths = {len(names), len(is_numeric), len(n_categories), len(levels)}
    if len(lengths) != 1:
        raise SchemaError(
            "Variable metadata sequences differ in length: "
            f"names={len(names)}, is_numeric={len(is_numeric)}, "
            f"n_categories={len(n_categories)}, levels={len(levels)}"
        )

    descriptors: list[VariableDescriptor] = []
    for name, numeric_flag, category_count, variable_levels in zip(
        names, is_numeric, n_categories, levels, strict=True
    ):
        if category_count is None:
            raise SchemaError("Variable metadata is missing the category count", variable=name)
        try:
            kind = classify_variable(is_numeric=numeric_flag, single_category=category_count == 1)
        except SchemaError as exc:
            raise SchemaError(str(exc), variable=name) from exc

        if kind == "numeric":
            descriptors.append(VariableDescriptor(name=name, kind=kind))
            continue
        if not variable_levels:
            raise SchemaError(f"{kind.capitalize()} variable has no levels", variable=name)
        cardinality = len(variable_levels) if kind == "ordered" else category_count
        try:
            descriptor = VariableDescriptor(
                name=name,
                kind=kind,
                levels=tuple(str(level) for level in variable_levels),
                cardinality=cardinality,
            )
        except ValidationError as exc:
            raise SchemaError(f"Invalid {kind} variable metadata: {exc.errors()[0]['msg']}", variable=name) from exc
        descriptors.append(descriptor)
    return tuple(descriptors)
