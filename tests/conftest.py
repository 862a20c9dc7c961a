"""Shared fixtures."""

from __future__ import annotations

import pytest

from fake_remote import serve


@pytest.fixture
def serve_remote():
    """``async with serve_remote(FakeRemote(...)) as running: ...``"""
    return serve


@pytest.fixture
def storage_dir(tmp_path):
    path = tmp_path / "json"
    path.mkdir()
    return path
