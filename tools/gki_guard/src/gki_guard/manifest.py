"""Readers for the ABI manifest that lists the symbols a GKI kernel promises to keep.

Three encodings are understood, detected from the file content:

* libabigail ABI XML (``android/abi_gki_aarch64.xml``), where every defined
  ``elf-symbol`` carries its expected ``crc``;
* a JSON manifest validated against ``schemas/manifest.schema.json``;
* the plain ``[abi_symbol_list]`` whitelist, which names symbols without
  versions and is therefore checked for presence only.
"""
from __future__ import annotations

import json
import re
import xml.etree.ElementTree as ET
from pathlib import Path
from typing import Any, Iterable

from .core import ParseError, SymbolSpec, read_text, validate_with_jsonschema

ABI_ROOT_TAGS = {"abi-corpus", "abi-corpus-group"}
SYMBOL_SECTION_TAGS = ("elf-function-symbols", "elf-variable-symbols")
SECTION_HEADER_RE = re.compile(r"^\[(?P<name>[^\]]+)\]$")
SYMBOL_NAME_RE = re.compile(r"^[A-Za-z_.$][A-Za-z0-9_.$]*$")


def detect_format(content: str) -> str:
    head = content.lstrip()
    if head.startswith("<"):
        return "xml"
    if head.startswith("{"):
        return "json"
    return "symbol_list"


def collect_specs(entries: Iterable[SymbolSpec], path: Path) -> list[SymbolSpec]:
    specs: list[SymbolSpec] = []
    seen: dict[str, SymbolSpec] = {}
    for spec in entries:
        previous = seen.get(spec.name)
        if previous is not None:
            where = f" (groups '{previous.group}' and '{spec.group}')" if previous.group or spec.group else ""
            raise ParseError(f"Duplicate symbol '{spec.name}' in ABI manifest '{path}'{where}.")
        seen[spec.name] = spec
        specs.append(spec)
    return specs


def corpus_label(corpus: ET.Element) -> str | None:
    return corpus.get("path") or corpus.get("architecture")


def iter_corpus_symbols(corpus: ET.Element) -> Iterable[SymbolSpec]:
    group = corpus_label(corpus)
    for section_tag in SYMBOL_SECTION_TAGS:
        for section in corpus.findall(section_tag):
            for symbol in section.findall("elf-symbol"):
                name = symbol.get("name")
                if not name:
                    raise ParseError(f"elf-symbol without a name in corpus '{group or '<unnamed>'}'.")
                if symbol.get("is-defined", "yes") != "yes":
                    continue
                crc = symbol.get("crc")
                yield SymbolSpec(name=name, expected_version=crc.strip() if crc else None, group=group)


def parse_abi_xml(content: str, path: Path) -> list[SymbolSpec]:
    try:
        root = ET.fromstring(content)
    except ET.ParseError as exc:
        raise ParseError(f"Invalid ABI XML in '{path}': {exc}") from exc

    if root.tag not in ABI_ROOT_TAGS:
        raise ParseError(
            f"ABI XML '{path}' has root <{root.tag}>, expected one of: {', '.join(sorted(ABI_ROOT_TAGS))}."
        )

    corpora = [root] if root.tag == "abi-corpus" else root.findall("abi-corpus")
    entries: list[SymbolSpec] = []
    for corpus in corpora:
        entries.extend(iter_corpus_symbols(corpus))
    return collect_specs(entries, path)


def parse_json_manifest(content: str, path: Path) -> list[SymbolSpec]:
    try:
        payload: Any = json.loads(content)
    except json.JSONDecodeError as exc:
        raise ParseError(f"Invalid JSON manifest '{path}': {exc}") from exc
    validate_with_jsonschema("manifest", payload, error_cls=ParseError)

    entries = (
        SymbolSpec(name=item["name"], expected_version=item.get("crc"), group=item.get("group"))
        for item in payload["symbols"]
    )
    return collect_specs(entries, path)


def parse_symbol_list(content: str, path: Path) -> list[SymbolSpec]:
    entries: list[SymbolSpec] = []
    group: str | None = None
    for lineno, raw_line in enumerate(content.splitlines(), start=1):
        line = raw_line.split("#", 1)[0].strip()
        if not line:
            continue
        header = SECTION_HEADER_RE.match(line)
        if header:
            group = header.group("name").strip()
            continue
        if not SYMBOL_NAME_RE.match(line):
            raise ParseError(f"{path}:{lineno}: invalid symbol list entry '{raw_line.strip()}'.")
        entries.append(SymbolSpec(name=line, expected_version=None, group=group))
    return collect_specs(entries, path)


def load_manifest(path: Path) -> list[SymbolSpec]:
    content = read_text(path, "ABI manifest")
    fmt = detect_format(content)
    if fmt == "xml":
        return parse_abi_xml(content, path)
    if fmt == "json":
        return parse_json_manifest(content, path)
    return parse_symbol_list(content, path)
