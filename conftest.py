from collections.abc import Iterator

import pytest
from django.core.cache import cache

from materializer.test.fake_database import FakeDatabase


@pytest.fixture(autouse=True)
def clear_cache() -> Iterator[None]:
    # the cycle lease and the abort flag live in the cache
    cache.clear()
    yield
    cache.clear()


@pytest.fixture
def database() -> FakeDatabase:
    return FakeDatabase()
