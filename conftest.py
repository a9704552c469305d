"""
Pytest configuration for the CHIP-8 test suite.

    python -m pytest                 # everything
    python -m pytest -m "not display"  # skip pygame-backed tests

pygame tests run against SDL's dummy video and audio drivers, so no
window or sound device is needed.
"""

import os

import pytest

os.environ.setdefault("SDL_VIDEODRIVER", "dummy")
os.environ.setdefault("SDL_AUDIODRIVER", "dummy")
os.environ.setdefault("PYGAME_HIDE_SUPPORT_PROMPT", "1")


def pytest_configure(config):
    config.addinivalue_line("markers",
        "display: tests that need pygame (skipped when it is not installed)")


def pytest_collection_modifyitems(config, items):
    try:
        import pygame  # noqa: F401
    except ImportError:
        skip = pytest.mark.skip(reason="pygame not installed")
        for item in items:
            if "display" in item.keywords:
                item.add_marker(skip)

