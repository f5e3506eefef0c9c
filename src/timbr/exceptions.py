"""Custom exceptions for timbr.

This module defines the error taxonomy shared by adapters, the canonical
node tables, and the traversal engine:

Model errors (subclass TimbrError):
- TimbrError: Base class for all timbr errors. Catch this to handle any
  failure raised while building, traversing, or describing a forest.
- SchemaError: Raised when backend metadata is malformed or incomplete.
- UnsupportedModelError: Raised when a backend feature is declined, e.g.
  classifiers with more than two classes.
- StructuralInvariantError: Raised when a node table is not a valid tree.

Observation errors (subclass TimbrError):
- MissingValueError: Raised when an observation is missing a split value
  at a node that has no missing branch.
- UnknownLevelError: Raised when an observation holds a level the model
  never saw.

Column validation exceptions (subclass ValueError):
- ColumnsNotFoundError: Raised when split-variable columns do not exist in
  the observation DataFrame.
"""

from __future__ import annotations


class TimbrError(Exception):
    """Base exception for all timbr errors.

    Every timbr error records where in the forest it was triggered so that
    failures in large ensembles can be traced to a single tree, node, or
    variable. Any of the location attributes may be `None` when not
    applicable.

    Attributes:
        tree_index (int | None): 0-based index of the tree in the forest.
        node_id (int | None): 1-based node id within the tree.
        variable (str | None): Name of the predictor involved.

    Examples:
        >>> err = TimbrError("bad split", tree_index=3, node_id=7, variable="age")
        >>> str(err)
        'bad split (tree 3, node 7, variable age)'
    """

    tree_index: int | None
    node_id: int | None
    variable: str | None

    def __init__(
        self,
        message: str,
        *,
        tree_index: int | None = None,
        node_id: int | None = None,
        variable: str | None = None,
    ) -> None:
        """Initialize TimbrError.

        Args:
            message (str): Description of the error.
            tree_index (int | None): 0-based index of the offending tree.
            node_id (int | None): 1-based id of the offending node.
            variable (str | None): Name of the offending predictor.
        """
        self.tree_index = tree_index
        self.node_id = node_id
        self.variable = variable
        location = _format_location(tree_index=tree_index, node_id=node_id, variable=variable)
        super().__init__(f"{message} ({location})" if location else message)

    def __repr__(self) -> str:
        """Return detailed representation for debugging.

        Returns:
            str: Detailed string representation including message and location.
        """
        return (
            f"{self.__class__.__name__}("
            f"message={str(self)!r}, tree_index={self.tree_index!r}, "
            f"node_id={self.node_id!r}, variable={self.variable!r})"
        )


class SchemaError(TimbrError):
    """Raised when backend metadata is malformed or incomplete.

    Unrecoverable: the forest cannot be built from the model that produced
    this metadata.
    """


class UnsupportedModelError(TimbrError):
    """Raised when a backend feature is not supported by an adapter.

    Examples include classification targets with more than two classes,
    multi-output models, or an unregistered model kind. No partially built
    state is kept when this is raised.
    """


class StructuralInvariantError(TimbrError):
    """Raised when a node table violates the tree invariants.

    Always raised at construction time; traversal assumes the invariants hold.
    """


class MissingValueError(TimbrError):
    """Raised when an observation cannot be routed past a split.

    The observation is missing a value for the split variable and the node
    declares no missing branch, which happens for backends that reject
    missing data at fit time.

    Attributes:
        row (int | None): 0-based row of the observation in the batch.

    Examples:
        >>> err = MissingValueError(
        ...     "Missing value with no missing branch",
        ...     tree_index=0,
        ...     node_id=1,
        ...     variable="x",
        ...     row=4,
        ... )
        >>> err.row
        4
    """

    row: int | None

    def __init__(
        self,
        message: str,
        *,
        tree_index: int | None = None,
        node_id: int | None = None,
        variable: str | None = None,
        row: int | None = None,
    ) -> None:
        """Initialize MissingValueError.

        Args:
            message (str): Description of the error.
            tree_index (int | None): 0-based index of the tree being traversed.
            node_id (int | None): 1-based id of the node that could not route.
            variable (str | None): Name of the missing split variable.
            row (int | None): 0-based row of the observation in the batch.
        """
        super().__init__(message, tree_index=tree_index, node_id=node_id, variable=variable)
        self.row = row

    def __repr__(self) -> str:
        """Return detailed representation for debugging.

        Returns:
            str: Detailed string representation including location and row.
        """
        return (
            f"{self.__class__.__name__}("
            f"message={str(self)!r}, tree_index={self.tree_index!r}, "
            f"node_id={self.node_id!r}, variable={self.variable!r}, row={self.row!r})"
        )


class UnknownLevelError(TimbrError):
    """Raised when an observation holds a level absent from the variable's levels.

    Attributes:
        row (int | None): 0-based row of the observation in the batch.
        value (object): The unrecognised level.
    """

    row: int | None
    value: object

    def __init__(
        self,
        message: str,
        *,
        variable: str | None = None,
        row: int | None = None,
        value: object = None,
    ) -> None:
        """Initialize UnknownLevelError.

        Args:
            message (str): Description of the error.
            variable (str | None): Name of the categorical predictor.
            row (int | None): 0-based row of the observation in the batch.
            value (object): The unrecognised level.
        """
        super().__init__(message, variable=variable)
        self.row = row
        self.value = value


class ColumnsNotFoundError(ValueError):
    """Raised when split-variable columns do not exist in a DataFrame.

    Attributes:
        missing_columns (list[str]): Column names that were not found.
        available_columns (list[str]): Column names present in the DataFrame.

    Examples:
        >>> err = ColumnsNotFoundError(
        ...     missing_columns=["x", "y"],
        ...     available_columns=["a", "b", "c"],
        ... )
        >>> err.missing_columns
        ['x', 'y']
    """

    missing_columns: list[str]
    available_columns: list[str]

    def __init__(
        self,
        missing_columns: list[str],
        available_columns: list[str],
    ) -> None:
        """Initialize ColumnsNotFoundError.

        Args:
            missing_columns (list[str]): Column names not found in the DataFrame.
            available_columns (list[str]): Column names present in the DataFrame.
        """
        super().__init__(f"Columns not found in DataFrame: {sorted(missing_columns)}")
        self.missing_columns = missing_columns
        self.available_columns = available_columns


def _format_location(
    *,
    tree_index: int | None,
    node_id: int | None,
    variable: str | None,
) -> str:
    """Join the non-empty location parts of an error into one string.

    Args:
        tree_index (int | None): 0-based tree index.
        node_id (int | None): 1-based node id.
        variable (str | None): Predictor name.

    Returns:
        str: e.g. `"tree 3, node 7, variable age"`, or `""` when all are `None`.
    """
    parts: list[str] = []
    if tree_index is not None:
        parts.append(f"tree {tree_index}")
    if node_id is not None:
        parts.append(f"node {node_id}")
    if variable is not None:
        parts.append(f"variable {variable}")
    return ", ".join(parts)
