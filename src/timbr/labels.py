"""Stable column labels for membership-matrix columns."""

from __future__ import annotations

import re

COLUMN_LABEL_PATTERN = re.compile(r"^t(\d+)_n(\d+)$")


def column_label(tree_index: int, node_id: int) -> str:
    """Return the membership column label of a node.

    Args:
        tree_index (int): 0-based index of the tree in the forest.
        node_id (int): 1-based node id within the tree.

    Returns:
        str: A label in the format `t<tree>_n<node>`, e.g. `"t0_n1"`.
    """
    return f"t{tree_index}_n{node_id}"


def parse_column_label(label: str) -> tuple[int, int]:
    """Recover the tree index and node id from a membership column label.

    Args:
        label (str): A label produced by `column_label`.

    Returns:
        tuple[int, int]: `(tree_index, node_id)`.

    Raises:
        ValueError: If the label doesn't match the pattern `t<tree>_n<node>`.

    Examples:
        >>> parse_column_label("t3_n12")
        (3, 12)
    """
    match = COLUMN_LABEL_PATTERN.match(label)
    if match is None:
        msg = f"Column label must match pattern 't<tree>_n<node>', got: {label}"
        raise ValueError(msg)
    return int(match.group(1)), int(match.group(2))
