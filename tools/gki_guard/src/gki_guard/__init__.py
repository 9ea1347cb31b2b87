from .core import (
    AbiDriftDetected,
    BuildError,
    CheckResult,
    ConfigError,
    GkiGuardError,
    ParseError,
    SymbolSpec,
)
from .kmi import check_files, check_symbols, format_report
from .manifest import load_manifest
from .symvers import load_symbol_table

__all__ = [
    "AbiDriftDetected",
    "BuildError",
    "CheckResult",
    "ConfigError",
    "GkiGuardError",
    "ParseError",
    "SymbolSpec",
    "check_files",
    "check_symbols",
    "format_report",
    "load_manifest",
    "load_symbol_table",
]
