from __future__ import annotations

import json
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import jsonschema

HEX_TOKEN_RE = re.compile(r"^0[xX][0-9a-fA-F]+$")


class GkiGuardError(Exception):
    pass


class ParseError(GkiGuardError):
    """Input file is missing, unreadable or not in the expected format."""


class ConfigError(GkiGuardError):
    pass


class BuildError(GkiGuardError):
    def __init__(self, message: str, stage: str | None = None) -> None:
        super().__init__(message)
        self.stage = stage


class AbiDriftDetected(BuildError):
    """Raised by the pipeline when the KMI check fails; the checker itself never raises it."""

    def __init__(self, result: "CheckResult", stage: str | None = None) -> None:
        super().__init__(
            f"KMI check failed: {len(result.missing)} missing, {len(result.mismatched)} mismatched symbols.",
            stage=stage,
        )
        self.result = result


@dataclass(frozen=True)
class SymbolSpec:
    name: str
    expected_version: str | None
    group: str | None = None


@dataclass(frozen=True)
class CheckResult:
    missing: tuple[str, ...]
    mismatched: dict[str, tuple[str, str]]

    @property
    def status(self) -> str:
        return "fail" if self.missing or self.mismatched else "pass"

    @property
    def passed(self) -> bool:
        return self.status == "pass"

    def as_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "missing": list(self.missing),
            "mismatched": {
                name: {"expected": expected, "observed": observed}
                for name, (expected, observed) in self.mismatched.items()
            },
        }


def canonical_version(token: str) -> str:
    value = token.strip()
    if HEX_TOKEN_RE.match(value):
        return f"0x{int(value, 16):08x}"
    return value


def read_text(path: Path, label: str) -> str:
    try:
        return path.read_text(encoding="utf-8-sig")
    except OSError as exc:
        raise ParseError(f"Unable to read {label} '{path}': {exc}") from exc
    except UnicodeDecodeError as exc:
        raise ParseError(f"{label} '{path}' is not valid UTF-8 text: {exc}") from exc


def load_json(path: Path) -> dict[str, Any]:
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except OSError as exc:
        raise GkiGuardError(f"Unable to read JSON file '{path}': {exc}") from exc
    except json.JSONDecodeError as exc:
        raise GkiGuardError(f"Invalid JSON in '{path}': {exc}") from exc


def write_json(path: Path, value: dict[str, Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(value, indent=2, sort_keys=True) + "\n", encoding="utf-8")


def get_schema_path(kind: str) -> Path:
    base = Path(__file__).resolve().parent / "schemas"
    mapping = {
        "config": base / "config.schema.json",
        "manifest": base / "manifest.schema.json",
    }
    if kind not in mapping:
        raise GkiGuardError(f"Unknown schema kind: {kind}")
    return mapping[kind]


def validate_with_jsonschema(kind: str, payload: Any, error_cls: type[GkiGuardError] = GkiGuardError) -> None:
    schema_payload = load_json(get_schema_path(kind))
    try:
        jsonschema.validate(payload, schema_payload)
    except jsonschema.ValidationError as exc:
        location = "/".join(str(part) for part in exc.absolute_path) or "<root>"
        raise error_cls(f"{kind} failed JSON schema validation at {location}: {exc.message}") from exc


def require_dict(value: Any, key: str) -> dict[str, Any]:
    if not isinstance(value, dict):
        raise ConfigError(f"Config is missing required object '{key}'.")
    return value


def require_str(value: Any, key: str) -> str:
    if not isinstance(value, str) or not value:
        raise ConfigError(f"Config field '{key}' must be a non-empty string.")
    return value
