from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from .core import HEX_TOKEN_RE, ParseError, canonical_version, read_text


@dataclass(frozen=True)
class SymversEntry:
    name: str
    version: str
    module: str | None = None
    export_type: str | None = None
    namespace: str | None = None


def parse_symvers_line(line: str) -> SymversEntry | None:
    """Parse one line of ``Module.symvers`` or of a ``symbol hash`` listing.

    Module.symvers lines are tab separated:
    ``crc<TAB>symbol<TAB>module<TAB>export_type[<TAB>namespace]``.
    Returns None when the line matches neither shape.
    """
    if "\t" in line:
        fields = line.split("\t")
        if len(fields) >= 4 and HEX_TOKEN_RE.match(fields[0].strip()) and fields[1].strip():
            return SymversEntry(
                name=fields[1].strip(),
                version=fields[0].strip(),
                module=fields[2].strip() or None,
                export_type=fields[3].strip() or None,
                namespace=(fields[4].strip() or None) if len(fields) > 4 else None,
            )

    fields = line.split()
    if len(fields) == 2:
        return SymversEntry(name=fields[0], version=fields[1])
    return None


def load_symvers_entries(path: Path) -> list[SymversEntry]:
    content = read_text(path, "version record")
    entries: list[SymversEntry] = []
    seen: dict[str, SymversEntry] = {}
    for lineno, raw_line in enumerate(content.splitlines(), start=1):
        line = raw_line.rstrip("\r\n")
        if not line.strip() or line.lstrip().startswith("#"):
            continue
        entry = parse_symvers_line(line)
        if entry is None:
            raise ParseError(f"{path}:{lineno}: malformed version record entry '{line.strip()}'.")

        previous = seen.get(entry.name)
        if previous is not None:
            if canonical_version(previous.version) != canonical_version(entry.version):
                raise ParseError(
                    f"{path}:{lineno}: symbol '{entry.name}' recorded twice with different versions "
                    f"({previous.version} and {entry.version})."
                )
            continue
        seen[entry.name] = entry
        entries.append(entry)
    return entries


def load_symbol_table(path: Path) -> dict[str, str]:
    return {entry.name: entry.version for entry in load_symvers_entries(path)}
