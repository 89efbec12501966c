from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Callable

import pytest


@pytest.fixture
def make_timeline(tmp_path: Path) -> Callable[..., Path]:
    def _make(edits: list[dict[str, Any]], name: str = "Timeline.json") -> Path:
        p = tmp_path / name
        p.write_text(json.dumps({"timelineEdits": edits}), encoding="utf-8")
        return p

    return _make
