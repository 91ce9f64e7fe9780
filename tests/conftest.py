"""Shared fixtures for photosift tests."""

from photosift.db import LibraryDB
from photosift.preferences import Preferences

import os
import pathlib
import pytest


# Minimal valid JPEG: SOI + APP0 (JFIF) + EOI
JPEG_BYTES = b"\xff\xd8\xff\xe0\x00\x10JFIF\x00\x01\x01\x00\x00\x01\x00\x01\x00\x00\xff\xd9"


@pytest.fixture(autouse=True)
def isolated_config(tmp_path: pathlib.Path, monkeypatch: pytest.MonkeyPatch) -> pathlib.Path:
    """Keep config and default database files out of the real home directory."""
    config_home = tmp_path / "xdg"
    monkeypatch.setenv("XDG_CONFIG_HOME", str(config_home))
    return config_home


@pytest.fixture
def tmp_root(tmp_path: pathlib.Path) -> pathlib.Path:
    """Create an empty photo root directory."""
    root = tmp_path / "photos"
    root.mkdir()
    return root


@pytest.fixture
def sample_jpg(tmp_root: pathlib.Path) -> pathlib.Path:
    p = tmp_root / "photo.jpg"
    p.write_bytes(JPEG_BYTES)
    return p


@pytest.fixture
def db(tmp_path: pathlib.Path):
    """A LibraryDB on a temp file."""
    library_db = LibraryDB(tmp_path / "library.db")
    yield library_db
    library_db.close()


@pytest.fixture
def prefs(db: LibraryDB) -> Preferences:
    return Preferences(db)


class FakeTrash:
    """Stands in for send2trash: records calls and removes the file."""

    def __init__(self) -> None:
        self.calls: list[str] = []
        self.fail_for: dict[str, OSError] = {}

    def __call__(self, path: str) -> None:
        self.calls.append(path)
        if path in self.fail_for:
            raise self.fail_for[path]
        os.remove(path)


@pytest.fixture
def fake_trash() -> FakeTrash:
    return FakeTrash()


@pytest.fixture
def scanner(prefs: Preferences):
    """A scanner with watching switched off; watch tests enable it themselves."""
    from photosift.preferences import WATCH_ENABLED
    from photosift.scanner import DirectoryScanner

    prefs.set(WATCH_ENABLED, False)
    return DirectoryScanner(prefs, watch_interval=0.05)
