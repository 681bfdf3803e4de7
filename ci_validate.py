#!/usr/bin/env python3
"""CI validation script for rzip test vectors and reproducibility.

This script validates:
1. All Python tools compile successfully
2. Canonical JSON vectors match their expected output
3. Archive vectors produce byte-identical output across entry orders,
   with the expected entries written and refmap payloads canonicalized
4. Repeated CLI runs produce byte-identical archives
5. Exclusion defaults agree with the archive vector manifest

Usage:
    python ci_validate.py                    # Run all validations
    python ci_validate.py --verbose          # Show detailed output

Exit codes:
    0 = All validations passed
    1 = One or more validations failed
    2 = Script error
"""

from __future__ import annotations

import argparse
import json
import pathlib
import subprocess
import sys
import tempfile
import zipfile
from dataclasses import dataclass
from typing import List, Optional, Tuple

# =============================================================================
# Configuration
# =============================================================================

SCRIPT_DIR = pathlib.Path(__file__).parent.resolve()

PYTHON_TOOLS = [
    "rzip.py",
    "rzip_canon.py",
    "rzip_determinize.py",
    "scripts/eval_invariants.py",
]

MANIFEST_FILE = "manifest.json"

# Two distinct build times used to simulate independent builds
BUILD_TIMES = [(2020, 2, 2, 2, 2, 2), (2024, 8, 8, 8, 8, 8)]


# =============================================================================
# Validation result tracking
# =============================================================================


@dataclass
class ValidationResult:
    name: str
    passed: bool
    message: str
    details: Optional[str] = None


class ValidationReport:
    def __init__(self):
        self.results: List[ValidationResult] = []
        # Archive entries written by the determinizer across all vector runs
        self.entries_written = 0
        self.entries_canonicalized = 0
        self.entries_dropped = 0

    def add(self, name: str, passed: bool, message: str, details: Optional[str] = None):
        self.results.append(ValidationResult(name, passed, message, details))

    def passed(self) -> bool:
        return all(r.passed for r in self.results)

    def count_archive(self, names: List[str], canonicalized: int, dropped: int):
        self.entries_written += len(names)
        self.entries_canonicalized += canonicalized
        self.entries_dropped += dropped

    def print_report(self, verbose: bool = False):
        print("\n" + "=" * 70)
        print("RZIP CI VALIDATION REPORT")
        print("=" * 70)

        passed = [r for r in self.results if r.passed]
        failed = [r for r in self.results if not r.passed]

        if failed:
            print(f"\n❌ FAILED ({len(failed)}):\n")
            for r in failed:
                print(f"  • {r.name}: {r.message}")
                if r.details:
                    for line in r.details.split("\n"):
                        print(f"      {line}")

        if verbose and passed:
            print(f"\n✅ PASSED ({len(passed)}):\n")
            for r in passed:
                print(f"  • {r.name}: {r.message}")

        if self.entries_written or self.entries_dropped:
            print(
                f"\nArchive entries: {self.entries_written} written "
                f"({self.entries_canonicalized} canonicalized), {self.entries_dropped} dropped"
            )

        print("\n" + "-" * 70)
        if self.passed():
            print(f"RESULT: ✅ ALL {len(self.results)} VALIDATIONS PASSED")
        else:
            print(f"RESULT: ❌ {len(failed)}/{len(self.results)} VALIDATIONS FAILED")
        print("-" * 70 + "\n")


# =============================================================================
# Helpers
# =============================================================================


def _load_manifest() -> Optional[dict]:
    manifest_path = SCRIPT_DIR / MANIFEST_FILE
    if not manifest_path.exists():
        return None
    with open(manifest_path, encoding="utf-8") as f:
        return json.load(f)


def _vector_entries(root: pathlib.Path) -> List[Tuple[str, bytes]]:
    return sorted(
        (p.relative_to(root).as_posix(), p.read_bytes()) for p in root.rglob("*") if p.is_file()
    )


def _write_zip(
    path: pathlib.Path,
    entries: List[Tuple[str, bytes]],
    date_time: Tuple[int, int, int, int, int, int],
) -> None:
    with zipfile.ZipFile(path, "w", compression=zipfile.ZIP_DEFLATED) as zf:
        for name, data in entries:
            zi = zipfile.ZipInfo(filename=name, date_time=date_time)
            zi.compress_type = zipfile.ZIP_DEFLATED
            zf.writestr(zi, data)


def _run_rzip(input_path: pathlib.Path, output_path: pathlib.Path) -> subprocess.CompletedProcess:
    return subprocess.run(
        [sys.executable, str(SCRIPT_DIR / "rzip.py"), str(input_path), str(output_path)],
        capture_output=True,
        text=True,
    )


# =============================================================================
# Validation functions
# =============================================================================


def validate_python_compilation(report: ValidationReport):
    """Validate all Python tools compile without syntax errors."""
    for tool in PYTHON_TOOLS:
        tool_path = SCRIPT_DIR / tool
        if not tool_path.exists():
            report.add(f"compile:{tool}", False, f"File not found: {tool}")
            continue

        result = subprocess.run(
            [sys.executable, "-m", "py_compile", str(tool_path)],
            capture_output=True,
            text=True,
        )

        if result.returncode == 0:
            report.add(f"compile:{tool}", True, "Compiles successfully")
        else:
            report.add(
                f"compile:{tool}",
                False,
                "Compilation failed",
                result.stderr.strip(),
            )


def validate_canonical_vectors(report: ValidationReport, manifest: dict):
    """Validate canonical JSON vectors via the rzip_canon CLI."""
    for tv_name, tv_spec in manifest.get("testVectors", {}).items():
        if tv_spec.get("mode") != "canonical":
            continue

        input_path = SCRIPT_DIR / tv_spec["input"]
        expected_path = SCRIPT_DIR / tv_spec["expected"]
        if not input_path.exists() or not expected_path.exists():
            report.add(f"tv:{tv_name}", False, "Vector files missing")
            continue

        result = subprocess.run(
            [sys.executable, str(SCRIPT_DIR / "rzip_canon.py"), str(input_path)],
            capture_output=True,
        )
        if result.returncode != 0:
            report.add(
                f"tv:{tv_name}",
                False,
                "Canonicalization failed",
                result.stderr.decode("utf-8", "replace").strip(),
            )
            continue

        if result.stdout == expected_path.read_bytes():
            report.add(f"tv:{tv_name}", True, "Canonical output matches")
        else:
            report.add(
                f"tv:{tv_name}",
                False,
                "Canonical output mismatch",
                result.stdout.decode("utf-8", "replace")[:500],
            )


def validate_archive_vectors(report: ValidationReport, manifest: dict):
    """Validate archive vectors are reproducible across entry order and build time."""
    sys.path.insert(0, str(SCRIPT_DIR))
    import rzip_canon

    for tv_name, tv_spec in manifest.get("testVectors", {}).items():
        if tv_spec.get("mode") != "archive":
            continue

        tv_path = SCRIPT_DIR / tv_spec["path"]
        if not tv_path.exists():
            report.add(f"tv:{tv_name}", False, f"Path not found: {tv_spec['path']}")
            continue

        entries = _vector_entries(tv_path)
        with tempfile.TemporaryDirectory() as tmpdir:
            tmp = pathlib.Path(tmpdir)
            outputs = []
            for index, (order, date_time) in enumerate(
                zip([entries, list(reversed(entries))], BUILD_TIMES)
            ):
                source = tmp / f"build-{index}.jar"
                output = tmp / f"build-{index}.out.jar"
                _write_zip(source, order, date_time)
                result = _run_rzip(source, output)
                if result.returncode != 0:
                    report.add(
                        f"tv:{tv_name}", False, "Determinizer failed", result.stderr.strip()
                    )
                    break
                outputs.append(output)
            else:
                if outputs[0].read_bytes() != outputs[1].read_bytes():
                    report.add(f"tv:{tv_name}", False, "Outputs differ between builds")
                    continue

                with zipfile.ZipFile(outputs[0]) as zf:
                    names = zf.namelist()
                    written = {name: zf.read(name) for name in names}
                if names != tv_spec["expectedEntries"]:
                    report.add(
                        f"tv:{tv_name}",
                        False,
                        "Entry list mismatch",
                        f"Expected: {tv_spec['expectedEntries']}\nComputed: {names}",
                    )
                    continue

                originals = dict(entries)
                stale = [
                    name
                    for name in tv_spec.get("canonicalized", [])
                    if written.get(name) != rzip_canon.canonicalize_bytes(originals[name])
                ]
                if stale:
                    report.add(
                        f"tv:{tv_name}", False, "Payload not canonical", "\n".join(stale)
                    )
                    continue

                dropped = len(originals) - len(names)
                report.count_archive(names, len(tv_spec.get("canonicalized", [])), dropped)
                report.add(
                    f"tv:{tv_name}",
                    True,
                    f"Reproducible ({len(names)} entries, {dropped} dropped)",
                )


def validate_repeated_runs(report: ValidationReport, manifest: dict):
    """Validate that running the CLI twice on one input gives identical bytes."""
    tv_spec = manifest.get("testVectors", {}).get("tv-2-jar")
    if tv_spec is None:
        return

    entries = _vector_entries(SCRIPT_DIR / tv_spec["path"])
    with tempfile.TemporaryDirectory() as tmpdir:
        tmp = pathlib.Path(tmpdir)
        source = tmp / "input.jar"
        _write_zip(source, entries, BUILD_TIMES[0])

        digests = []
        for run in range(2):
            output = tmp / f"run-{run}.jar"
            result = _run_rzip(source, output)
            if result.returncode != 0:
                report.add("repeat:tv-2-jar", False, "Determinizer failed", result.stderr.strip())
                return
            digests.append(output.read_bytes())

    if digests[0] == digests[1]:
        report.add("repeat:tv-2-jar", True, "Repeated runs are byte-identical")
    else:
        report.add("repeat:tv-2-jar", False, "Repeated runs differ")


def validate_exclusion_consistency(report: ValidationReport, manifest: dict):
    """Validate the default exclusion list agrees with the archive vector."""
    sys.path.insert(0, str(SCRIPT_DIR))
    import rzip_determinize

    tv_spec = manifest.get("testVectors", {}).get("tv-2-jar", {})
    expected = set(tv_spec.get("excluded", []))
    actual = set(rzip_determinize.DEFAULT_EXCLUDED_NAMES)

    if expected == actual:
        report.add(
            "consistency:excludes",
            True,
            f"Exclusion names consistent ({len(actual)} names)",
        )
    else:
        details = []
        if expected - actual:
            details.append(f"Missing from determinizer: {sorted(expected - actual)}")
        if actual - expected:
            details.append(f"Missing from manifest: {sorted(actual - expected)}")
        report.add(
            "consistency:excludes",
            False,
            "Exclusion name mismatch",
            "\n".join(details),
        )


# =============================================================================
# Main
# =============================================================================


def main() -> int:
    parser = argparse.ArgumentParser(description="rzip CI validation")
    parser.add_argument("--verbose", "-v", action="store_true", help="Verbose output")
    args = parser.parse_args()

    report = ValidationReport()

    print("Running rzip CI validations...")

    validate_python_compilation(report)

    manifest = _load_manifest()
    if manifest is None:
        report.add("manifest", False, f"Manifest not found: {MANIFEST_FILE}")
    else:
        validate_exclusion_consistency(report, manifest)
        validate_canonical_vectors(report, manifest)
        validate_archive_vectors(report, manifest)
        validate_repeated_runs(report, manifest)

    report.print_report(verbose=args.verbose)

    return 0 if report.passed() else 1


if __name__ == "__main__":
    sys.exit(main())
