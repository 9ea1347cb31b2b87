from __future__ import annotations

from pathlib import Path
from typing import Iterable, Mapping

from .core import CheckResult, SymbolSpec, canonical_version
from .manifest import load_manifest
from .symvers import load_symbol_table


def check_symbols(specs: Iterable[SymbolSpec], table: Mapping[str, str]) -> CheckResult:
    """Compare the declared KMI surface against the versions the build produced.

    Symbols without an expected version are only checked for presence.
    Neither input is modified.
    """
    missing: list[str] = []
    mismatched: dict[str, tuple[str, str]] = {}

    for spec in sorted(specs, key=lambda item: item.name):
        observed = table.get(spec.name)
        if observed is None:
            missing.append(spec.name)
            continue
        if spec.expected_version is None:
            continue
        if canonical_version(spec.expected_version) != canonical_version(observed):
            mismatched[spec.name] = (spec.expected_version.strip(), observed.strip())

    return CheckResult(missing=tuple(missing), mismatched=mismatched)


def check_files(manifest_path: Path, record_path: Path) -> CheckResult:
    specs = load_manifest(manifest_path)
    table = load_symbol_table(record_path)
    return check_symbols(specs, table)


def format_report(result: CheckResult) -> list[str]:
    lines = [
        f"KMI check status: {result.status}",
        f"Missing symbols: {len(result.missing)}",
        f"Mismatched symbols: {len(result.mismatched)}",
    ]
    if result.missing:
        lines.append("Missing:")
        lines.extend(f"  - {name}" for name in result.missing)
    if result.mismatched:
        lines.append("Mismatched:")
        lines.extend(
            f"  - {name}: expected {expected}, observed {observed}"
            for name, (expected, observed) in result.mismatched.items()
        )
    return lines


def print_report(result: CheckResult) -> None:
    for line in format_report(result):
        print(line)


def write_markdown_report(path: Path, result: CheckResult, manifest_path: Path, record_path: Path) -> None:
    lines: list[str] = []
    lines.append(f"# KMI Report ({result.status})")
    lines.append("")
    lines.append(f"- ABI manifest: `{manifest_path}`")
    lines.append(f"- Version record: `{record_path}`")
    lines.append(f"- Missing symbols: `{len(result.missing)}`")
    lines.append(f"- Mismatched symbols: `{len(result.mismatched)}`")
    lines.append("")

    if result.missing:
        lines.append("## Missing")
        for name in result.missing:
            lines.append(f"- `{name}`")
        lines.append("")

    if result.mismatched:
        lines.append("## Mismatched")
        lines.append("")
        lines.append("| Symbol | Expected | Observed |")
        lines.append("| --- | --- | --- |")
        for name, (expected, observed) in result.mismatched.items():
            lines.append(f"| `{name}` | `{expected}` | `{observed}` |")
        lines.append("")

    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("\n".join(lines) + "\n", encoding="utf-8")
