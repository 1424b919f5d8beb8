"""Shared fixtures for eventmetrics tests.

Everything runs against mocks: DAOs, sessions and replica clients are
replaced by ``AsyncMock`` objects, so no database server is needed.
"""

import pytest

from factories import FakeSessionFactory


@pytest.fixture
def session_factory() -> FakeSessionFactory:
    return FakeSessionFactory()
