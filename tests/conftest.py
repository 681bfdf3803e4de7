from __future__ import annotations

import json
import zipfile
from pathlib import Path
from typing import Callable, Iterable, List, Sequence, Tuple

import pytest

# A build-time timestamp that differs from anything the determinizer writes
BUILD_DATE_TIME = (2023, 10, 19, 12, 34, 56)


@pytest.fixture(scope="session")
def repo_root() -> Path:
    return Path(__file__).resolve().parents[1]


@pytest.fixture(scope="session")
def manifest(repo_root: Path) -> dict:
    return json.loads((repo_root / "manifest.json").read_text(encoding="utf-8"))


def write_zip(
    path: Path,
    entries: Iterable[Sequence],
    date_time: Tuple[int, int, int, int, int, int] = BUILD_DATE_TIME,
    compress_type: int = zipfile.ZIP_DEFLATED,
) -> Path:
    """Write ``(name, data[, compress_type])`` entries in the given order."""
    with zipfile.ZipFile(path, "w") as zf:
        for entry in entries:
            name, data = entry[0], entry[1]
            zi = zipfile.ZipInfo(filename=name, date_time=date_time)
            zi.compress_type = entry[2] if len(entry) > 2 else compress_type
            zi.create_system = 3
            zi.external_attr = (0o40775 << 16) | 0x10 if name.endswith("/") else 0o100664 << 16
            zf.writestr(zi, data)
    return path


@pytest.fixture
def make_zip() -> Callable[..., Path]:
    return write_zip


def vector_entries(root: Path) -> List[Tuple[str, bytes]]:
    """Read a test-vector directory as sorted ``(name, data)`` pairs."""
    return sorted(
        (p.relative_to(root).as_posix(), p.read_bytes()) for p in root.rglob("*") if p.is_file()
    )


def read_entries(path: Path) -> List[Tuple[str, bytes]]:
    with zipfile.ZipFile(path, "r") as zf:
        return [(info.filename, zf.read(info)) for info in zf.infolist()]
