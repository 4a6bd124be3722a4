"""
pytest configuration for the UDP MQTT gateway tests.

This file configures pytest to work with the project's test structure.
"""

import sys
from pathlib import Path
from typing import Any, List

# Add project root and tests directory to Python path
PROJECT_ROOT = Path(__file__).parent.parent
TESTS_DIR = Path(__file__).parent

# Add paths to sys.path for imports
sys.path.insert(0, str(PROJECT_ROOT))
sys.path.insert(0, str(PROJECT_ROOT / "src"))
sys.path.insert(0, str(TESTS_DIR))


# Configure pytest
def pytest_configure(config: Any) -> None:
    """Configure pytest with project-specific settings."""
    config.addinivalue_line(
        "markers", "slow: marks tests as slow (deselect with '-m \"not slow\"')"
    )
    config.addinivalue_line(
        "markers", "network: marks tests that open real loopback UDP sockets"
    )


def pytest_collection_modifyitems(config: Any, items: List[Any]) -> None:
    """Modify test collection to add markers or other modifications."""
    for item in items:
        if "reconnect" in item.name or "timeout" in item.name:
            item.add_marker("slow")

        if "udp" in item.nodeid.lower() or "end_to_end" in item.nodeid.lower():
            item.add_marker("network")
