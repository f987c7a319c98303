"""
This file configures pytest.

Tests run against the src/ layout without requiring an installed package:
pip install -e ".[test]"
pytest -q tests
RUN_INTEGRATION_TESTS=1 pytest -q tests -m integration
"""

from __future__ import annotations

import sys
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_ROOT = PROJECT_ROOT / "src"

for candidate in (SRC_ROOT,):
    candidate_str = str(candidate)
    if candidate_str not in sys.path:
        sys.path.insert(0, candidate_str)
