"""Shared test fixtures."""

from __future__ import annotations

import logging

import pytest


@pytest.fixture(autouse=True)
def _isolate_bolt_logger():
    """Drop handlers added to the ``bolt`` logger during a test.

    Handlers created while pytest captures output are bound to the capture
    stream, which is closed once the test ends.
    """
    root = logging.getLogger("bolt")
    saved_handlers = list(root.handlers)
    saved_level = root.level
    yield
    for handler in list(root.handlers):
        if handler not in saved_handlers:
            root.removeHandler(handler)
            handler.close()
    root.setLevel(saved_level)
