#!/usr/bin/env python3
"""Make a ZIP/JAR build output reproducible.

Usage:
    python rzip.py build/libs/app.jar dist/app.jar

Reads the input archive and writes a deterministic copy: entries sorted by
name, timestamps fixed, build-cache entries dropped and ``*.refmap.json``
manifests rewritten in canonical JSON form. Set SOURCE_DATE_EPOCH to choose
the fixed timestamp (default 1980-01-01 00:00:00).

Exit codes:
    0 = Archive written
    1 = Archive or payload error (no output archive is produced)
    2 = Usage error or unexpected failure
"""

from __future__ import annotations

import argparse
import pathlib
import sys
from typing import List, Optional

from rzip_canon import ParseError
from rzip_determinize import (
    ArchiveError,
    DeterminizeResult,
    DeterminizerConfig,
    compute_archive_digest,
    determinize,
)


def _render_summary(result: DeterminizeResult, digest: str, size: int) -> str:
    lines = [
        f" Entries written: {result.entry_count}"
        f" ({result.canonicalized_count} canonicalized, {result.copied_count} copied)",
        f" Entries dropped: {len(result.excluded)}",
    ]
    for name in result.excluded:
        lines.append(f"   - {name}")
    lines.append(f" Output digest: sha256:{digest} ({size:,} bytes)")
    return "\n".join(lines)


# pragma: no mutate
def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        prog="rzip",
        description="Rewrite a ZIP/JAR archive so identical content yields identical bytes",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s build/libs/app.jar dist/app.jar
  SOURCE_DATE_EPOCH=1700000000 %(prog)s app-dev.jar app.jar
        """,
    )
    parser.add_argument("input", type=pathlib.Path, help="Input archive path")
    parser.add_argument("output", type=pathlib.Path, help="Output archive path")
    args = parser.parse_args(argv)

    print("Running determinizer")
    print(f" Input path: {args.input}")
    print(f" Output path: {args.output}")

    try:
        config = DeterminizerConfig.from_environment()
        result = determinize(args.input, args.output, config)
        digest, size = compute_archive_digest(result.output_path)
    except (ArchiveError, ParseError, ValueError, OSError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except Exception as e:
        print(f"Unexpected error: {e}", file=sys.stderr)
        return 2

    print(_render_summary(result, digest, size))
    return 0


if __name__ == "__main__":
    sys.exit(main())
