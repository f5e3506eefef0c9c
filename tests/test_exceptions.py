"""Tests for custom exceptions.

This module tests the error taxonomy raised by adapters, node tables, and
traversal, ensuring proper inheritance, location attributes, and
catchability patterns.
"""

from __future__ import annotations

import pytest
from pytest_check import check

from timbr.exceptions import (
    ColumnsNotFoundError,
    MissingValueError,
    SchemaError,
    StructuralInvariantError,
    TimbrError,
    UnknownLevelError,
    UnsupportedModelError,
)


class TestTimbrError:
    """Tests for the TimbrError base class."""

    def test_message_without_location(self) -> None:
        """Verify a bare message is kept unchanged when no location is given."""
        error = TimbrError("Something failed")

        with check:
            assert str(error) == "Something failed"
        with check:
            assert error.tree_index is None
        with check:
            assert error.node_id is None
        with check:
            assert error.variable is None

    def test_message_includes_location(self) -> None:
        """Verify the location parts are appended to the message."""
        error = TimbrError("bad split", tree_index=3, node_id=7, variable="age")

        with check:
            assert str(error) == "bad split (tree 3, node 7, variable age)"
        with check:
            assert error.tree_index == 3
        with check:
            assert error.node_id == 7

    def test_partial_location(self) -> None:
        """Verify only the supplied location parts appear."""
        error = TimbrError("bad metadata", variable="colour")

        assert str(error) == "bad metadata (variable colour)"

    def test_repr_lists_location(self) -> None:
        """Verify repr includes the class name and location fields."""
        error = SchemaError("bad", tree_index=0)

        with check:
            assert repr(error).startswith("SchemaError(")
        with check:
            assert "tree_index=0" in repr(error)

    @pytest.mark.parametrize(
        "error_class",
        [SchemaError, UnsupportedModelError, StructuralInvariantError, MissingValueError, UnknownLevelError],
    )
    def test_subclasses_catchable_as_base(self, error_class: type[TimbrError]) -> None:
        """Verify every model and observation error can be caught as TimbrError.

        Args:
            error_class (type[TimbrError]): Exception class under test.
        """
        with pytest.raises(TimbrError):
            raise error_class("failure")


class TestMissingValueError:
    """Tests for MissingValueError."""

    def test_stores_row_and_location(self) -> None:
        """Verify the row is stored alongside the location."""
        error = MissingValueError("Missing value", tree_index=2, node_id=5, variable="x", row=11)

        with check:
            assert error.row == 11
        with check:
            assert error.node_id == 5
        with check:
            assert str(error) == "Missing value (tree 2, node 5, variable x)"
        with check:
            assert "row=11" in repr(error)


class TestUnknownLevelError:
    """Tests for UnknownLevelError."""

    def test_stores_value_and_row(self) -> None:
        """Verify the offending value and row are stored."""
        error = UnknownLevelError("Unknown level", variable="colour", row=3, value="purple")

        with check:
            assert error.value == "purple"
        with check:
            assert error.row == 3
        with check:
            assert error.variable == "colour"


class TestColumnsNotFoundError:
    """Tests for ColumnsNotFoundError."""

    def test_is_value_error(self) -> None:
        """Verify ColumnsNotFoundError can be caught as ValueError."""
        with pytest.raises(ValueError):  # noqa: PT011 - checking the base class
            raise ColumnsNotFoundError(missing_columns=["x"], available_columns=["a"])

    def test_stores_columns(self) -> None:
        """Verify missing and available columns are stored and the message is sorted."""
        error = ColumnsNotFoundError(missing_columns=["y", "x"], available_columns=["a", "b"])

        with check:
            assert error.missing_columns == ["y", "x"]
        with check:
            assert error.available_columns == ["a", "b"]
        with check:
            assert str(error) == "Columns not found in DataFrame: ['x', 'y']"
