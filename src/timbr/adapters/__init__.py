"""Backend adapters: translate fitted tree models into canonical forests."""

from __future__ import annotations

from timbr.adapters.base import (
    AdapterFactory,
    BackendAdapter,
    assemble_tree,
    build_forest,
    get_adapter,
    register_adapter,
    registered_kinds,
)
from timbr.adapters.randomforest import RandomForestAdapter, RandomForestArrays, unpack_levels
from timbr.adapters.scikit_learn import SklearnAdapter

register_adapter("sklearn", SklearnAdapter)
register_adapter("randomforest", RandomForestAdapter)

__all__ = [
    "AdapterFactory",
    "BackendAdapter",
    "RandomForestAdapter",
    "RandomForestArrays",
    "SklearnAdapter",
    "assemble_tree",
    "build_forest",
    "get_adapter",
    "register_adapter",
    "registered_kinds",
    "unpack_levels",
]
