"""Shared fixtures for vcf_sync tests."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

import pytest

if TYPE_CHECKING:
    from pathlib import Path

CARD = (
    "BEGIN:VCARD\r\n"
    "VERSION:3.0\r\n"
    "N:Smith;John;;;\r\n"
    "FN:John Smith\r\n"
    "TEL;TYPE=CELL:+1 555 0100\r\n"
    "REV:2023-04-15T12:34:56Z\r\n"
    "END:VCARD\r\n"
)


def write_card(path: Path, text: str = CARD) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(text.encode("utf-8"))
    return path


@pytest.fixture
def logger() -> logging.Logger:
    log = logging.getLogger("tests.vcf_sync")
    log.setLevel(logging.DEBUG)
    return log


@pytest.fixture
def source(tmp_path: Path) -> Path:
    root = tmp_path / "source"
    root.mkdir()
    return root


@pytest.fixture
def dest(tmp_path: Path) -> Path:
    return tmp_path / "dest"


@pytest.fixture
def lock_dir(tmp_path: Path) -> Path:
    return tmp_path / "locks"
