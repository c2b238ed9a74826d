from __future__ import annotations

import os
from collections.abc import Iterator
from pathlib import Path

import pytest

from vidtag.dependencies import reset_cached_dependencies


@pytest.fixture(autouse=True)
def _vidtag_env_defaults(  # pyright: ignore[reportUnusedFunction]
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> Iterator[None]:
    for name in list(os.environ):
        if name.startswith("VIDTAG_"):
            monkeypatch.delenv(name)
    monkeypatch.setenv("VIDTAG_DATA_DIR", str(tmp_path / "vidtag-data"))
    monkeypatch.setenv("VIDTAG_TELEMETRY_SINK", "none")
    yield
    reset_cached_dependencies()
