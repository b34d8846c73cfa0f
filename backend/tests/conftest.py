"""Shared fixtures for chart import tests."""

from __future__ import annotations

import pathlib

import pytest

from openenc.db import database


@pytest.fixture
def store() -> database.InMemoryChartStore:
    memory_store = database.InMemoryChartStore()
    memory_store.initialize()
    return memory_store


@pytest.fixture
def chart_root(tmp_path: pathlib.Path) -> pathlib.Path:
    root = tmp_path / "ENC_ROOT"
    root.mkdir()
    return root
