#!/usr/bin/env python3
"""Rewrite a ZIP/JAR archive so that identical content yields identical bytes.

This is a post-processing step for build outputs: two builds of the same
sources must produce the same archive, whatever the build time or the order
in which the build tool happened to add entries.

Determinism settings:
  - Entries are written in lexicographic order of their names (UTF-8 bytes).
  - All entries use a fixed timestamp (1980-01-01 00:00:00, the ZIP epoch).
  - Extra fields, comments and host-specific attributes are not carried over;
    permissions are fixed to 0644 (0755 for directories).
  - Build-cache entries written by annotation processing are dropped.
  - ``*.refmap.json`` payloads are re-serialized in canonical JSON form.
  - Every entry keeps its original compression method.
  - Non-ASCII entry names are written as UTF-8 with the language-encoding
    flag set. A name stored in CP437 keeps its text but not its raw bytes.

The output is assembled in a temporary file next to the destination and only
moved into place once the archive is complete, so a failed run never leaves
a finalized archive behind.
"""

from __future__ import annotations

import hashlib
import os
import shutil
import time
import uuid
import zipfile
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO, FrozenSet, Iterable, List, Mapping, NamedTuple, Optional, Tuple, Union

import rzip_canon

# =============================================================================
# Constants
# =============================================================================

# Generated by the annotation-processing cache; contents vary between builds.
DEFAULT_EXCLUDED_NAMES: FrozenSet[str] = frozenset(
    {
        "META-INF/fml_cache_annotation.json",
        "META-INF/fml_cache_class_versions.json",
    }
)

DEFAULT_CANONICAL_SUFFIXES: Tuple[str, ...] = (".refmap.json",)

# Earliest and latest timestamps the DOS date/time fields can hold
ZIP_EPOCH: Tuple[int, int, int, int, int, int] = (1980, 1, 1, 0, 0, 0)
ZIP_MAX_DATE_TIME: Tuple[int, int, int, int, int, int] = (2107, 12, 31, 23, 59, 58)

# -rw-r--r-- / drwxr-xr-x plus the MS-DOS directory bit
FILE_ATTRIBUTES = (0o644 & 0xFFFF) << 16
DIRECTORY_ATTRIBUTES = ((0o755 & 0xFFFF) << 16) | 0x10

COPY_CHUNK_SIZE = 65536

ACTION_COPY = "copied"
ACTION_CANONICALIZE = "canonicalized"

_ENCRYPTED_FLAG = 0x1

PathLike = Union[str, "os.PathLike[str]"]
DateTime = Tuple[int, int, int, int, int, int]


# =============================================================================
# Errors
# =============================================================================


class ArchiveError(OSError):
    """Raised when an archive cannot be opened, read or written."""

    def __init__(
        self,
        message: str,
        path: Optional[Path] = None,
        entry_name: Optional[str] = None,
    ):
        super().__init__(message)
        self.path = path
        self.entry_name = entry_name

    def __str__(self) -> str:
        return str(self.args[0])


class EntryParseError(rzip_canon.ParseError):
    """A canonicalizable entry does not hold well-formed JSON."""

    def __init__(self, entry_name: str, cause: rzip_canon.ParseError):
        super().__init__(f"{entry_name}: {cause.message}", line=cause.line, column=cause.column)
        self.entry_name = entry_name


# =============================================================================
# Configuration
# =============================================================================


def parse_source_date_epoch(value: str) -> int:
    """Parse a ``SOURCE_DATE_EPOCH`` value (non-negative integer seconds)."""
    try:
        epoch = int(value.strip())
    except ValueError as exc:
        raise ValueError(f"SOURCE_DATE_EPOCH must be an integer, got {value!r}") from exc
    if epoch < 0:
        raise ValueError(f"SOURCE_DATE_EPOCH must not be negative, got {epoch}")
    return epoch


def date_time_from_epoch(epoch: int) -> DateTime:
    """
    Convert a UNIX timestamp to a ZIP date_time tuple.

    The result is clamped to the range the DOS fields can represent and the
    seconds are rounded down to the 2-second DOS resolution.
    """
    try:
        gm = time.gmtime(epoch)
    except (OverflowError, OSError):
        return ZIP_MAX_DATE_TIME
    date_time = (gm.tm_year, gm.tm_mon, gm.tm_mday, gm.tm_hour, gm.tm_min, gm.tm_sec)
    date_time = max(ZIP_EPOCH, min(date_time, ZIP_MAX_DATE_TIME))
    return date_time[:5] + (date_time[5] - date_time[5] % 2,)


@dataclass(frozen=True)
class DeterminizerConfig:
    """Fixed inputs of a determinizer run."""

    excluded_names: FrozenSet[str] = DEFAULT_EXCLUDED_NAMES
    canonical_suffixes: Tuple[str, ...] = DEFAULT_CANONICAL_SUFFIXES
    date_time: DateTime = ZIP_EPOCH

    def __post_init__(self) -> None:
        object.__setattr__(self, "excluded_names", frozenset(self.excluded_names))
        object.__setattr__(self, "canonical_suffixes", tuple(self.canonical_suffixes))
        date_time = tuple(self.date_time)
        if len(date_time) != 6 or not ZIP_EPOCH <= date_time <= ZIP_MAX_DATE_TIME:
            raise ValueError(f"date_time outside the ZIP range: {self.date_time!r}")
        object.__setattr__(self, "date_time", date_time)

    @classmethod
    def from_environment(
        cls, environ: Optional[Mapping[str, str]] = None
    ) -> "DeterminizerConfig":
        """Default configuration, with the timestamp taken from SOURCE_DATE_EPOCH if set."""
        if environ is None:
            environ = os.environ
        raw = environ.get("SOURCE_DATE_EPOCH", "").strip()
        if not raw:
            return cls()
        return cls(date_time=date_time_from_epoch(parse_source_date_epoch(raw)))

    def is_excluded(self, name: str) -> bool:
        return name in self.excluded_names

    def is_canonical(self, name: str) -> bool:
        return name.endswith(self.canonical_suffixes)


# =============================================================================
# Data Types
# =============================================================================


class EntryResult(NamedTuple):
    """One entry written to the output archive."""

    name: str
    action: str  # ACTION_COPY or ACTION_CANONICALIZE
    compress_type: int
    size: int  # Uncompressed bytes written


class DeterminizeResult(NamedTuple):
    """Result of a determinizer run."""

    input_path: Path
    output_path: Path
    entries: Tuple[EntryResult, ...]  # In output order
    excluded: Tuple[str, ...]  # Dropped entry names, in sorted order

    @property
    def entry_count(self) -> int:
        return len(self.entries)

    @property
    def canonicalized_count(self) -> int:
        return sum(1 for e in self.entries if e.action == ACTION_CANONICALIZE)

    @property
    def copied_count(self) -> int:
        return sum(1 for e in self.entries if e.action == ACTION_COPY)


# =============================================================================
# Entry helpers
# =============================================================================


def entry_sort_key(info: zipfile.ZipInfo) -> bytes:
    return info.filename.encode("utf-8")


def check_duplicate_names(names: Iterable[str]) -> Optional[str]:
    """Return the first repeated name, or None if all names are unique."""
    seen = set()
    for name in names:
        if name in seen:
            return name
        seen.add(name)
    return None


def normalized_info(info: zipfile.ZipInfo, date_time: DateTime) -> zipfile.ZipInfo:
    """Build a fresh ZipInfo carrying only the name and compression method of ``info``."""
    zi = zipfile.ZipInfo(filename=info.filename, date_time=date_time)
    zi.compress_type = info.compress_type
    zi.create_system = 0  # "FAT"; avoids platform-specific permission bits
    zi.external_attr = DIRECTORY_ATTRIBUTES if info.is_dir() else FILE_ATTRIBUTES
    return zi


def _discard(path: Path) -> None:
    path.unlink(missing_ok=True)


# =============================================================================
# Determinizer
# =============================================================================


class Determinizer:
    """Rewrites archives according to a fixed :class:`DeterminizerConfig`."""

    def __init__(self, config: Optional[DeterminizerConfig] = None):
        self.config = config if config is not None else DeterminizerConfig()

    def run(self, input_path: PathLike, output_path: PathLike) -> DeterminizeResult:
        """
        Write a deterministic copy of ``input_path`` to ``output_path``.

        Args:
            input_path: Existing ZIP/JAR archive (left untouched)
            output_path: Destination; created or replaced on success only

        Returns:
            DeterminizeResult describing the written and dropped entries

        Raises:
            ArchiveError: If any archive operation fails
            EntryParseError: If a canonicalizable entry is malformed JSON
        """
        input_path = Path(input_path)
        output_path = Path(output_path)

        with self._open_source(input_path) as source:
            entries = self.sorted_entries(source, input_path)

            try:
                output_path.parent.mkdir(parents=True, exist_ok=True)
            except OSError as exc:
                raise ArchiveError(
                    f"Cannot create output directory {output_path.parent}: {exc}",
                    path=output_path,
                ) from exc

            tmp_path = output_path.with_name(f".{output_path.name}.{uuid.uuid4().hex[:12]}.tmp")
            try:
                raw = open(tmp_path, "xb")
            except OSError as exc:
                raise ArchiveError(
                    f"Cannot write output archive {output_path}: {exc}", path=output_path
                ) from exc
            try:
                with raw:
                    written, excluded = self._write_archive(
                        source, entries, raw, input_path, output_path
                    )
            except BaseException:
                _discard(tmp_path)
                raise

        # The source is closed first so that input and output may be the same file.
        try:
            os.replace(tmp_path, output_path)
        except OSError as exc:
            _discard(tmp_path)
            raise ArchiveError(
                f"Cannot move output archive into place at {output_path}: {exc}",
                path=output_path,
            ) from exc

        return DeterminizeResult(
            input_path=input_path,
            output_path=output_path,
            entries=tuple(written),
            excluded=tuple(excluded),
        )

    @staticmethod
    def sorted_entries(source: zipfile.ZipFile, input_path: Path) -> List[zipfile.ZipInfo]:
        """Return the entries of ``source`` in canonical order."""
        infos = source.infolist()
        duplicate = check_duplicate_names(info.filename for info in infos)
        if duplicate is not None:
            raise ArchiveError(
                f"Duplicate entry name in {input_path}: {duplicate}",
                path=input_path,
                entry_name=duplicate,
            )
        return sorted(infos, key=entry_sort_key)

    # -------------------------------------------------------------------------

    def _open_source(self, input_path: Path) -> zipfile.ZipFile:
        if not input_path.exists():
            raise ArchiveError(f"Input archive not found: {input_path}", path=input_path)
        try:
            return zipfile.ZipFile(input_path, "r")
        except (zipfile.BadZipFile, OSError) as exc:
            raise ArchiveError(
                f"Cannot open input archive {input_path}: {exc}", path=input_path
            ) from exc

    def _write_archive(
        self,
        source: zipfile.ZipFile,
        entries: List[zipfile.ZipInfo],
        raw: BinaryIO,
        input_path: Path,
        output_path: Path,
    ) -> Tuple[List[EntryResult], List[str]]:
        try:
            with zipfile.ZipFile(raw, "w") as dest:
                return self._write_entries(source, dest, entries, input_path)
        except (ArchiveError, rzip_canon.ParseError):
            raise
        except (OSError, zipfile.LargeZipFile) as exc:
            raise ArchiveError(
                f"Cannot write output archive {output_path}: {exc}", path=output_path
            ) from exc

    def _write_entries(
        self,
        source: zipfile.ZipFile,
        dest: zipfile.ZipFile,
        entries: List[zipfile.ZipInfo],
        input_path: Path,
    ) -> Tuple[List[EntryResult], List[str]]:
        written: List[EntryResult] = []
        excluded: List[str] = []

        for info in entries:
            name = info.filename
            if self.config.is_excluded(name):
                excluded.append(name)
                continue

            if info.flag_bits & _ENCRYPTED_FLAG:
                raise ArchiveError(
                    f"Encrypted entry not supported: {name}", path=input_path, entry_name=name
                )

            target = normalized_info(info, self.config.date_time)
            try:
                if self.config.is_canonical(name):
                    size = self._write_canonical(source, dest, info, target)
                    action = ACTION_CANONICALIZE
                else:
                    size = self._write_copy(source, dest, info, target)
                    action = ACTION_COPY
            except rzip_canon.ParseError as exc:
                raise EntryParseError(name, exc) from exc
            except (OSError, zipfile.BadZipFile, zipfile.LargeZipFile, NotImplementedError) as exc:
                raise ArchiveError(
                    f"Failed to process entry {name} of {input_path}: {exc}",
                    path=input_path,
                    entry_name=name,
                ) from exc

            written.append(EntryResult(name, action, info.compress_type, size))

        return written, excluded

    @staticmethod
    def _write_canonical(
        source: zipfile.ZipFile,
        dest: zipfile.ZipFile,
        info: zipfile.ZipInfo,
        target: zipfile.ZipInfo,
    ) -> int:
        payload = rzip_canon.canonicalize_bytes(source.read(info))
        dest.writestr(target, payload)
        return len(payload)

    @staticmethod
    def _write_copy(
        source: zipfile.ZipFile,
        dest: zipfile.ZipFile,
        info: zipfile.ZipInfo,
        target: zipfile.ZipInfo,
    ) -> int:
        # Size hint so entries over 2 GiB get ZIP64 headers up front
        target.file_size = info.file_size
        with source.open(info) as src, dest.open(target, "w") as dst:
            shutil.copyfileobj(src, dst, COPY_CHUNK_SIZE)
        return info.file_size


# =============================================================================
# Convenience API
# =============================================================================


def determinize(
    input_path: PathLike,
    output_path: PathLike,
    config: Optional[DeterminizerConfig] = None,
) -> DeterminizeResult:
    """Write a deterministic copy of ``input_path`` to ``output_path``."""
    return Determinizer(config).run(input_path, output_path)


def compute_archive_digest(archive_path: PathLike, chunk_size: int = 65536) -> Tuple[str, int]:
    """
    Compute SHA-256 digest of an archive file.

    Returns:
        Tuple of (hex digest, file size in bytes)
    """
    hasher = hashlib.sha256()
    size = 0

    with open(archive_path, "rb") as f:
        while chunk := f.read(chunk_size):
            hasher.update(chunk)
            size += len(chunk)

    return hasher.hexdigest(), size
