"""Tests that every package imports cleanly in a fresh interpreter."""

import subprocess
import sys

import pytest

MODULES = [
    "arkswap.swap.orchestrator",
    "arkswap.ark",
    "arkswap.ark.base",
    "arkswap.signing",
    "arkswap.tx",
    "arkswap.tx.batch",
    "arkswap.providers.schemas",
    "arkswap.swap.models",
    "arkswap.storage",
    "arkswap.cli",
]


@pytest.mark.parametrize("module", MODULES)
def test_import_in_fresh_interpreter(module):
    """Test each module imports first without relying on earlier imports."""
    result = subprocess.run(
        [sys.executable, "-c", f"import {module}"],
        capture_output=True,
        text=True,
    )
    assert result.returncode == 0, result.stderr
