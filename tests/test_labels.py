"""Tests for membership column labels."""

from __future__ import annotations

import pytest
from pytest_check import check

from timbr.labels import column_label, parse_column_label


class TestColumnLabels:
    """Tests for formatting and parsing `t<tree>_n<node>` labels."""

    def test_format(self) -> None:
        """Labels combine the 0-based tree index and the 1-based node id."""
        with check:
            assert column_label(0, 1) == "t0_n1"
        with check:
            assert column_label(12, 345) == "t12_n345"

    @pytest.mark.parametrize(("tree_index", "node_id"), [(0, 1), (3, 12), (499, 10_001)])
    def test_parse_inverts_format(self, tree_index: int, node_id: int) -> None:
        """Parsing a formatted label recovers its parts."""
        assert parse_column_label(column_label(tree_index, node_id)) == (tree_index, node_id)

    @pytest.mark.parametrize("label", ["", "t1", "n1_t0", "t1_n", "t-1_n2", "t1_n2_extra", "T1_N2"])
    def test_parse_rejects_malformed(self, label: str) -> None:
        """Labels not matching the pattern raise ValueError."""
        with pytest.raises(ValueError, match="must match pattern"):
            parse_column_label(label)
