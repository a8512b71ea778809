"""
Global pytest configuration for agentplan.
"""

import pytest


def pytest_configure(config):
    """Configure pytest markers."""
    config.addinivalue_line("markers", "asyncio: mark test as an asyncio coroutine")
    config.addinivalue_line(
        "markers", "integration: marks tests that spawn real worker processes"
    )


def pytest_addoption(parser):
    """Add command line options for integration tests."""
    parser.addoption(
        "--skip-integration",
        action="store_true",
        default=False,
        help="Skip tests that spawn real worker processes",
    )


def pytest_collection_modifyitems(config, items):
    """Skip integration tests when requested."""
    if not config.getoption("--skip-integration"):
        return
    skip = pytest.mark.skip(reason="--skip-integration given")
    for item in items:
        if "integration" in item.keywords:
            item.add_marker(skip)
