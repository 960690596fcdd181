"""Pytest configuration and fixtures."""

import logging
import sys
from pathlib import Path

import pytest

# Add src to path for imports
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

# Add tests to path for provider_mock imports
tests_path = Path(__file__).parent
sys.path.insert(0, str(tests_path))


@pytest.fixture(autouse=True)
def reset_logging():
    """Remove the handler setup_logging installs so it never outlives a test's streams."""
    root = logging.getLogger()
    level = root.level
    yield
    for handler in list(root.handlers):
        if handler.get_name() == "infractl":
            root.removeHandler(handler)
    root.setLevel(level)
