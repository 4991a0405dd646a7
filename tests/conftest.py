from __future__ import annotations

import sys
from pathlib import Path

import pytest

# Tests import the package straight from the src layout.
PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / "src"
if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))


@pytest.fixture(autouse=True)
def _no_ambient_feature_flags(monkeypatch: pytest.MonkeyPatch) -> None:
    """Start every test with CIPHERPOT_FEATURES unset so flags only come from overrides."""

    monkeypatch.delenv("CIPHERPOT_FEATURES", raising=False)
