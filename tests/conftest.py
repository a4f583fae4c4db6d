"""Shared fixtures for sshpod tests."""

from __future__ import annotations

import itertools
import logging
import lzma
from pathlib import Path
from typing import Any, Iterator
from unittest.mock import MagicMock

import pytest

from sshpod.config import SshpodConfig
from tests.fakes import SSHD_BYTES


@pytest.fixture(autouse=True)
def reset_sshpod_logger() -> Iterator[None]:
    """Undo CLI logging setup so caplog sees sshpod records."""
    yield
    root = logging.getLogger("sshpod")
    root.handlers.clear()
    root.propagate = True
    root.setLevel(logging.NOTSET)


@pytest.fixture
def fake_keygen(monkeypatch: pytest.MonkeyPatch) -> MagicMock:
    """Replace ssh-keygen with a writer of numbered dummy keys."""
    counter = itertools.count(1)

    def _keygen(cmd: list[str], **kwargs: Any) -> MagicMock:
        n = next(counter)
        private = Path(cmd[cmd.index("-f") + 1])
        comment = cmd[cmd.index("-C") + 1]
        private.write_text(f"-----PRIVATE {n}-----\n")
        Path(f"{private}.pub").write_text(f"ssh-ed25519 AAAAKEY{n} {comment}\n")
        return MagicMock(returncode=0, stdout="", stderr="")

    mock = MagicMock(side_effect=_keygen)
    monkeypatch.setattr("sshpod.keys.subprocess.run", mock)
    return mock


@pytest.fixture
def bundle_dir(tmp_path: Path) -> Path:
    """Directory with xz bundles for both architectures."""
    directory = tmp_path / "bundles"
    directory.mkdir()
    for arch in ("amd64", "arm64"):
        (directory / f"sshd_{arch}.xz").write_bytes(lzma.compress(SSHD_BYTES))
    return directory


@pytest.fixture
def config(tmp_path: Path, bundle_dir: Path) -> SshpodConfig:
    """Config pointing at temporary cache and bundle directories."""
    return SshpodConfig(cache_dir=tmp_path / "cache", bundle_dir=bundle_dir)
