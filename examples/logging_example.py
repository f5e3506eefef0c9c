"""Demonstrates how to enable and configure logging in timbr.

timbr logging is disabled by default. Users opt in by calling ``enable_logging()``,
which returns a ``LoggingHandle``. The handle can be used as a context manager
(``with enable_logging(): ...``) or disabled manually via ``handle.disable()``.
When the last active handle is disabled, timbr logging is automatically turned off.

Key concepts shown here:

- ``level``: ``"INFO"`` reports forest builds; ``"DEBUG"`` adds per-tree
  translation, traversal batch sizes, and flagged duplicate counts.
- ``log_format``: ``"short"`` shows ``timestamp | level | function - message``;
  ``"full"`` adds the module and line number.
- Failed observations: with ``missing_policy="per_observation"`` a row that
  cannot be routed is logged at WARNING and reported in ``failed_rows``
  instead of failing the batch.
- Automatic cleanup: logging is re-disabled when the context manager exits.
"""

import numpy as np
import polars as pl
from sklearn.ensemble import RandomForestRegressor

from timbr import build_forest, enable_logging, forest_duplicates, render_rule, traverse

rng = np.random.default_rng(0)
features = rng.integers(0, 10, size=(200, 2)).astype(float)
target = features[:, 0] * 2.0 - features[:, 1] + rng.normal(size=200)
model = RandomForestRegressor(n_estimators=3, max_depth=3, random_state=0).fit(features, target)

with enable_logging(level="DEBUG", log_format="full"):
    forest = build_forest(model, kind="sklearn", feature_names=["age", "tenure"])

    observations = pl.DataFrame({"age": [1.0, None, 8.0], "tenure": [3.0, 2.0, 9.0]})
    result = traverse(forest, observations, missing_policy="per_observation")
    print(f"\nFailed rows: {sorted(result.failed_rows)}")
    print(f"Predictions: {result.predictions().to_list()}\n")

    duplicates = forest_duplicates(forest)
    print(f"Duplicate columns: {int(duplicates.sum())} of {forest.n_nodes}\n")

    tree = forest.trees[0]
    for node_id in tree.terminal_ids():
        print(render_rule(tree, node_id, forest.variables))

# Logging automatically disabled here
