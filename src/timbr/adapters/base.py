"""Backend adapter contract, adapter registry, and forest assembly."""

from __future__ import annotations

from collections.abc import Callable, Mapping
from typing import Any, Protocol

from loguru import logger
from pydantic import ValidationError

from timbr.exceptions import SchemaError, UnsupportedModelError
from timbr.models import Forest, Node, TreeTable, TreeTask
from timbr.variables import VariableDescriptor


class BackendAdapter(Protocol):
    """Translates one backend's fitted models into canonical node tables.

    Every adapter routes left when a value is at most the split threshold or
    its level is in the split subset, sets `missing_branch="undefined"` when
    its backend cannot route missing values, and maps the backend's node
    status codes onto `"terminal"` and `"internal"`, dropping unused rows.
    """

    def describe(self, model: Any) -> tuple[VariableDescriptor, ...]:
        """Return one descriptor per predictor of the model."""
        ...

    def task(self, model: Any) -> TreeTask:
        """Return whether the model is a classifier or a regressor."""
        ...

    def class_labels(self, model: Any) -> tuple[str, ...] | None:
        """Return the class labels of a classifier, `None` for regressors."""
        ...

    def tree_count(self, model: Any) -> int:
        """Return the number of trees the model holds."""
        ...

    def translate_tree(
        self,
        model: Any,
        tree_index: int,
        variables: tuple[VariableDescriptor, ...],
    ) -> TreeTable:
        """Return the canonical node table of one tree."""
        ...


type AdapterFactory = Callable[..., BackendAdapter]

_ADAPTERS: dict[str, AdapterFactory] = {}


def register_adapter(kind: str, factory: AdapterFactory) -> None:
    """Register an adapter factory under a model-kind tag.

    Args:
        kind (str): Tag passed as `kind` to `build_forest`, e.g. `"sklearn"`.
        factory (AdapterFactory): Callable taking the adapter options as
            keyword arguments and returning an adapter; usually the adapter class.

    Raises:
        ValueError: If `kind` is empty.
    """
    if not kind:
        raise ValueError("Adapter kind must be a non-empty string")
    _ADAPTERS[kind] = factory


def registered_kinds() -> list[str]:
    """Return the registered model-kind tags.

    Returns:
        list[str]: Sorted tags.
    """
    return sorted(_ADAPTERS)


def get_adapter(kind: str, **options: Any) -> BackendAdapter:
    """Create the adapter registered for a model kind.

    Args:
        kind (str): Model-kind tag.
        **options (Any): Adapter options, forwarded to the factory.

    Returns:
        BackendAdapter: A configured adapter.

    Raises:
        UnsupportedModelError: If no adapter is registered for `kind`.
    """
    factory = _ADAPTERS.get(kind)
    if factory is None:
        raise UnsupportedModelError(f"No adapter registered for model kind {kind!r}; known kinds: {registered_kinds()}")
    return factory(**options)


def build_forest(model: Any, *, kind: str, **options: Any) -> Forest:
    """Translate every tree of a fitted model into a validated `Forest`.

    The adapter is chosen by the explicit `kind` tag rather than by the
    model's type. Any failure in any tree fails the whole build.

    Args:
        model (Any): The fitted backend model.
        kind (str): Model-kind tag, e.g. `"sklearn"` or `"randomforest"`.
        **options (Any): Adapter options, e.g. `missing_values="route"`.

    Returns:
        Forest: The canonical forest.

    Raises:
        UnsupportedModelError: If the kind is unknown or the model uses a
            declined feature.
        SchemaError: If the model's metadata is malformed.
        StructuralInvariantError: If a translated tree is not a valid tree.

    Examples:
        >>> from sklearn.ensemble import RandomForestRegressor  # doctest: +SKIP
        >>> model = RandomForestRegressor(n_estimators=5).fit(X, y)  # doctest: +SKIP
        >>> forest = build_forest(model, kind="sklearn")  # doctest: +SKIP
    """
    adapter = get_adapter(kind, **options)
    variables = adapter.describe(model)
    task = adapter.task(model)
    class_labels = adapter.class_labels(model)
    n_trees = adapter.tree_count(model)
    if n_trees < 1:
        raise SchemaError(f"Model of kind {kind!r} reports no trees")

    trees: list[TreeTable] = []
    for tree_index in range(n_trees):
        tree = adapter.translate_tree(model, tree_index, variables)
        logger.debug("Tree translated", model_kind=kind, tree_index=tree_index, n_nodes=len(tree))
        trees.append(tree)

    forest = Forest(
        trees=tuple(trees),
        variables=variables,
        task=task,
        class_labels=class_labels,
        model_kind=kind,
    )
    logger.info(
        "Forest built",
        model_kind=kind,
        task=task,
        n_trees=forest.n_trees,
        n_nodes=forest.n_nodes,
        n_variables=len(variables),
    )
    return forest


def assemble_tree(tree_index: int, rows: list[Mapping[str, Any]]) -> TreeTable:
    """Build a validated `TreeTable` from per-node field mappings.

    Args:
        tree_index (int): 0-based tree index.
        rows (list[Mapping[str, Any]]): One mapping of `Node` fields per node,
            ordered by id.

    Returns:
        TreeTable: The validated table.

    Raises:
        SchemaError: If a node's fields have invalid types or values.
        StructuralInvariantError: If the nodes do not form a valid tree.
    """
    nodes: list[Node] = []
    for row in rows:
        try:
            nodes.append(Node(**row))
        except ValidationError as exc:
            raise SchemaError(
                f"Invalid node fields: {exc.errors()[0]['msg']}",
                tree_index=tree_index,
                node_id=row.get("id"),
            ) from exc
    return TreeTable(index=tree_index, nodes=tuple(nodes))
