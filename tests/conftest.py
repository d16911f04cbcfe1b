"""Shared fixtures."""

from __future__ import annotations

import pytest

from containerview import Container, EntityStore, clear_errors, get_errors_by_category
from tests.builders import make_container


def _clear_all_errors() -> None:
    for category in list(get_errors_by_category()):
        clear_errors(category)


@pytest.fixture(autouse=True)
def clean_errors():
    _clear_all_errors()
    yield
    _clear_all_errors()


@pytest.fixture()
def containers() -> list[Container]:
    return [make_container(f"c{i}") for i in range(5)]


@pytest.fixture()
def store(containers) -> EntityStore:
    return EntityStore(lambda: list(containers))
