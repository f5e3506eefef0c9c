"""Package-wide defaults for traversal and rendering, read from the environment."""

from __future__ import annotations

from functools import lru_cache
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

type MissingValuePolicy = Literal["strict", "per_observation"]


class TimbrSettings(BaseSettings):
    """Defaults used when a caller leaves the matching keyword argument as `None`.

    Values are read from `TIMBR_*` environment variables or a `.env` file,
    e.g. `TIMBR_N_JOBS=4`.

    Attributes:
        missing_policy (MissingValuePolicy): `"strict"` fails the whole batch
            on the first unroutable missing value; `"per_observation"` fails
            only the offending observation.
        n_jobs (int): Number of threads used to traverse trees in parallel.
        chunk_size (int): Rows per block yielded by `iter_membership_chunks`.
        threshold_decimal_places (int): Decimal places used when rendering
            numeric thresholds in rules.
    """

    model_config = SettingsConfigDict(
        env_prefix="TIMBR_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    missing_policy: MissingValuePolicy = Field(
        default="strict",
        description="How traversal treats observations that cannot be routed past a missing value.",
    )
    n_jobs: int = Field(default=1, ge=1, description="Threads used to traverse trees in parallel.")
    chunk_size: int = Field(default=10_000, ge=1, description="Rows per streamed membership chunk.")
    threshold_decimal_places: int = Field(
        default=4,
        ge=0,
        description="Decimal places for numeric thresholds in rendered rules.",
    )


@lru_cache(maxsize=1)
def get_settings() -> TimbrSettings:
    """Return the process-wide settings, loaded once.

    Returns:
        TimbrSettings: The cached settings instance. Call
            `get_settings.cache_clear()` to reload after changing the environment.
    """
    return TimbrSettings()
