#!/usr/bin/env python3
from __future__ import annotations

import hashlib
import json
import sys
import tempfile
import zipfile
from pathlib import Path

SAMPLE_ENTRIES = [
    ("com/example/Main.class", b"\xca\xfe\xba\xbe\x00\x00\x00\x34"),
    ("META-INF/MANIFEST.MF", b"Manifest-Version: 1.0\n\n"),
    ("META-INF/fml_cache_annotation.json", b'{"stamp": 1697712000}'),
    ("META-INF/fml_cache_class_versions.json", b'{"com/example/Main": 52}'),
    ("mixins.example.refmap.json", b'{"n": 123456789012345678, "b": 1, "a": 2}'),
    ("assets/lang/en_US.lang", b"item.widget.name=Widget\n"),
]


def _write_zip(path: Path, entries, date_time) -> Path:
    with zipfile.ZipFile(path, "w") as zf:
        for name, data in entries:
            zi = zipfile.ZipInfo(filename=name, date_time=date_time)
            zi.compress_type = zipfile.ZIP_DEFLATED
            zf.writestr(zi, data)
    return path


def _sha256(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def main() -> int:
    root = Path(__file__).resolve().parents[1]
    sys.path.insert(0, str(root))

    import rzip_canon
    import rzip_determinize

    checks = []

    with tempfile.TemporaryDirectory() as tmpdir:
        tmp = Path(tmpdir)
        forward = _write_zip(tmp / "forward.jar", SAMPLE_ENTRIES, (2023, 1, 1, 1, 1, 1))
        backward = _write_zip(
            tmp / "backward.jar", list(reversed(SAMPLE_ENTRIES)), (2024, 2, 2, 2, 2, 2)
        )

        first = rzip_determinize.determinize(forward, tmp / "first.jar")
        second = rzip_determinize.determinize(forward, tmp / "second.jar")
        reordered = rzip_determinize.determinize(backward, tmp / "reordered.jar")
        output = first.output_path.read_bytes()

        # Check 1: repeated runs are byte-identical
        ok = output == second.output_path.read_bytes()
        checks.append(
            {
                "id": "determinism",
                "passed": ok,
                "details": "Repeated runs identical" if ok else "Repeated runs differ",
            }
        )

        # Check 2: entry order and build time do not matter
        ok = output == reordered.output_path.read_bytes()
        checks.append(
            {
                "id": "order-invariance",
                "passed": ok,
                "details": "Reordered input gives same bytes" if ok else "Outputs differ",
            }
        )

        with zipfile.ZipFile(first.output_path) as zf:
            infos = zf.infolist()
            written = {info.filename: zf.read(info) for info in infos}
        source = dict(SAMPLE_ENTRIES)

        # Check 3: completeness and exclusion
        expected_names = set(source) - rzip_determinize.DEFAULT_EXCLUDED_NAMES
        names = [info.filename for info in infos]
        ok = set(names) == expected_names and len(names) == len(expected_names)
        checks.append(
            {
                "id": "completeness",
                "passed": ok,
                "details": f"{len(names)} entries written" if ok else f"Unexpected names: {names}",
            }
        )

        # Check 4: timestamps erased
        stamps = {info.date_time for info in infos}
        ok = stamps == {rzip_determinize.ZIP_EPOCH}
        checks.append(
            {
                "id": "timestamp-erasure",
                "passed": ok,
                "details": "All entries at ZIP epoch" if ok else f"Found {sorted(stamps)}",
            }
        )

        # Check 5: refmap canonicalized with exact numbers
        refmap = written.get("mixins.example.refmap.json")
        ok = refmap == b'{"a":2,"b":1,"n":123456789012345678}\n'
        checks.append(
            {
                "id": "canonical-payload",
                "passed": ok,
                "details": "Refmap canonical" if ok else f"Got {refmap!r}",
            }
        )

        # Check 6: passthrough payloads unchanged
        mismatched = [
            name
            for name, data in written.items()
            if not name.endswith(".refmap.json") and _sha256(data) != _sha256(source[name])
        ]
        ok = not mismatched
        checks.append(
            {
                "id": "passthrough",
                "passed": ok,
                "details": "Payload hashes match" if ok else f"Changed: {mismatched}",
            }
        )

        # Check 7: malformed payload fails without output
        broken = _write_zip(
            tmp / "broken.jar", [("bad.refmap.json", b'{"a": ')], (2023, 1, 1, 1, 1, 1)
        )
        target = tmp / "broken.out.jar"
        try:
            rzip_determinize.determinize(broken, target)
            ok = False
            details = "Malformed payload accepted"
        except rzip_canon.ParseError:
            ok = not target.exists()
            details = "Run aborted, no output" if ok else "Output left behind"
        checks.append({"id": "malformed-payload", "passed": ok, "details": details})

    passed = all(check["passed"] for check in checks)
    result = {"passed": passed, "checks": checks}
    print(json.dumps(result, indent=2))
    return 0 if passed else 1


if __name__ == "__main__":
    raise SystemExit(main())
