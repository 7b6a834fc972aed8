"""Fixtures shared by the tool handler tests."""

from contextlib import contextmanager

import pytest


@pytest.fixture
def mock_engine_scope(engine, monkeypatch):
    """Make the tool handlers run against the test engine.

    The handlers open their own engine per call in a worker thread; patching
    ``engine_scope`` lets them see the data the test created through the
    same session.
    """

    @contextmanager
    def _mock_engine_scope():
        yield engine

    monkeypatch.setattr("library_circulation.circulation.engine.engine_scope", _mock_engine_scope)
    return engine
