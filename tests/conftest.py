from __future__ import annotations

import os
from pathlib import Path

import pytest

os.environ.setdefault("HARVESTER_OTEL_ENABLED", "false")

from harvester.core.config import Settings  # noqa: E402
from support import GatedDispatcher  # noqa: E402


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(
        database_url=None,
        data_dir=str(tmp_path / "data"),
        otel_enabled=False,
        queue_cooldown_seconds=0.0,
        max_concurrent_jobs=2,
    )


@pytest.fixture
def gated_dispatcher() -> GatedDispatcher:
    return GatedDispatcher()
