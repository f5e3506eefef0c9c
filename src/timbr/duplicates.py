"""Detection of nodes whose split paths are logically redundant."""

from __future__ import annotations

from collections.abc import Hashable, Sequence

import numpy as np
from loguru import logger

from timbr.constraints import all_path_constraints, constraint_key
from timbr.models import Forest, TreeTable
from timbr.variables import VariableDescriptor


def duplicate_of(tree: TreeTable, variables: Sequence[VariableDescriptor]) -> dict[int, int]:
    """Map every duplicate node to the earlier node it repeats.

    Two nodes are equivalent when the splits on their root-to-node paths
    fold into the same per-variable constraints, e.g. the same factor subsets
    in a different order, or a threshold already implied by a tighter
    ancestor threshold on the same variable. Of two equivalent nodes the one
    with the higher id is the duplicate.

    Args:
        tree (TreeTable): The tree to inspect.
        variables (Sequence[VariableDescriptor]): The forest's variables.

    Returns:
        dict[int, int]: Duplicate node id -> id of the first equivalent node.
    """
    first_seen: dict[frozenset[Hashable], int] = {}
    duplicates: dict[int, int] = {}
    for node_id, constraints in all_path_constraints(tree, variables).items():
        key = constraint_key(constraints)
        if key in first_seen:
            duplicates[node_id] = first_seen[key]
        else:
            first_seen[key] = node_id
    return duplicates


def find_duplicates(tree: TreeTable, variables: Sequence[VariableDescriptor]) -> list[bool]:
    """Flag the duplicate nodes of one tree.

    Args:
        tree (TreeTable): The tree to inspect.
        variables (Sequence[VariableDescriptor]): The forest's variables.

    Returns:
        list[bool]: One flag per node, indexed by `node_id - 1`.

    Examples:
        >>> flags = find_duplicates(forest.trees[0], forest.variables)  # doctest: +SKIP
        >>> [node_id for node_id, flag in enumerate(flags, start=1) if flag]  # doctest: +SKIP
        [5]
    """
    duplicates = duplicate_of(tree, variables)
    return [node.id in duplicates for node in tree.nodes]


def forest_duplicates(forest: Forest, *, across_trees: bool = True) -> np.ndarray:
    """Flag duplicate nodes for every column of the forest's membership matrix.

    Args:
        forest (Forest): The forest to inspect.
        across_trees (bool): When True (default), a node also counts as a
            duplicate of an equivalent node in an earlier tree, so every root
            after the first is flagged. When False, each tree is checked on its own.

    Returns:
        np.ndarray: Boolean vector aligned with `forest.column_keys()`.
    """
    flags: list[bool] = []
    first_seen: dict[frozenset[Hashable], tuple[int, int]] = {}
    for tree in forest.trees:
        if not across_trees:
            first_seen = {}
        for node_id, constraints in all_path_constraints(tree, forest.variables).items():
            key = constraint_key(constraints)
            flags.append(key in first_seen)
            first_seen.setdefault(key, (tree.index, node_id))
    mask = np.array(flags, dtype=bool)
    logger.debug("Duplicate nodes flagged", n_nodes=mask.size, n_duplicates=int(mask.sum()), across_trees=across_trees)
    return mask
