"""Reconciliation configuration.

Values resolve in order (later wins):

1. ``ReconConfig`` defaults
2. ``[tool.feerecon]`` in ``pyproject.toml``
3. ``FEERECON_*`` environment variables
4. Explicit overrides (CLI options)

Example ``pyproject.toml``::

    [tool.feerecon]
    confidence_threshold = 0.7
    reference_patterns = ["[A-Z]{3}\\d{3}"]
    reference_digit_width = 3
"""

from __future__ import annotations

import os
import re
import tomllib
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any

from .errors import ConfigError

# Alphabetic prefix of 2-4 letters followed by 2-4 digits (HAR234, SUT001).
PREFIXED_REFERENCE_PATTERN = r"[A-Za-z]{2,4}\d{2,4}"
# Bare 2-4 digit student identifier.
BARE_REFERENCE_PATTERN = r"\d{2,4}"

DEFAULT_DB_PATH = "feerecon.db"
DB_PATH_ENV = "FEERECON_DB"
ENV_PREFIX = "FEERECON_"


@dataclass(frozen=True)
class ReconConfig:
    """Tunables for parsing, schema detection, extraction and retries."""

    delimiter: str | None = None
    trailing_cell_tolerance: int = 1
    confidence_threshold: float = 0.6
    sample_rows: int = 20
    reference_patterns: tuple[str, ...] = (
        PREFIXED_REFERENCE_PATTERN,
        BARE_REFERENCE_PATTERN,
    )
    reference_digit_width: int | None = None
    day_first: bool = True
    max_retries: int = 3
    retry_backoff_s: float = 0.5
    max_backoff_s: float = 8.0

    def __post_init__(self) -> None:
        errors = validate_config(self)
        if errors:
            raise ConfigError("Invalid configuration:\n" + "\n".join(
                f"  - {e}" for e in errors
            ))


def validate_config(config: ReconConfig) -> list[str]:
    """Return a list of problems with *config* (empty = valid)."""
    errors: list[str] = []
    if config.delimiter is not None and len(config.delimiter) != 1:
        errors.append(f"delimiter must be a single character, got {config.delimiter!r}")
    if config.trailing_cell_tolerance < 0:
        errors.append("trailing_cell_tolerance must be >= 0")
    if not 0.0 <= config.confidence_threshold <= 1.0:
        errors.append("confidence_threshold must be within [0, 1]")
    if config.sample_rows < 1:
        errors.append("sample_rows must be >= 1")
    if not config.reference_patterns:
        errors.append("reference_patterns must not be empty")
    for pattern in config.reference_patterns:
        try:
            re.compile(pattern)
        except re.error as e:
            errors.append(f"reference pattern {pattern!r} does not compile: {e}")
    if config.reference_digit_width is not None and config.reference_digit_width < 1:
        errors.append("reference_digit_width must be >= 1")
    if config.max_retries < 0:
        errors.append("max_retries must be >= 0")
    if config.retry_backoff_s < 0 or config.max_backoff_s < 0:
        errors.append("retry backoff values must be >= 0")
    return errors


_FIELD_TYPES: dict[str, str] = {f.name: str(f.type) for f in fields(ReconConfig)}


def _coerce(name: str, value: Any) -> Any:
    """Coerce a raw TOML/env value to the type of field *name*."""
    kind = _FIELD_TYPES[name]
    if value is None:
        return None
    try:
        if kind.startswith("tuple"):
            if isinstance(value, str):
                value = [p for p in value.split(",") if p.strip()]
            return tuple(str(v).strip() for v in value)
        if kind.startswith("bool"):
            if isinstance(value, str):
                return value.strip().lower() in ("1", "true", "yes", "on")
            return bool(value)
        if kind.startswith("int"):
            if isinstance(value, str) and value.strip().lower() in ("", "none"):
                return None
            return int(value)
        if kind.startswith("float"):
            return float(value)
        if isinstance(value, str) and name == "delimiter" and value == "\\t":
            return "\t"
        return str(value) if value != "" else None
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid value for {name}: {value!r} ({e})") from e


def _read_pyproject_table(pyproject_path: Path) -> dict[str, Any]:
    if not pyproject_path.exists():
        return {}
    try:
        data = tomllib.loads(pyproject_path.read_text())
    except OSError as e:
        raise ConfigError(f"Failed to read {pyproject_path}: {e}") from e
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"Invalid TOML in {pyproject_path}: {e}") from e
    table = data.get("tool", {}).get("feerecon", {})
    if not isinstance(table, dict):
        raise ConfigError("[tool.feerecon] must be a table")
    return table


def load_config(
    pyproject_path: Path | None = None,
    environ: dict[str, str] | None = None,
    **overrides: Any,
) -> ReconConfig:
    """Build a :class:`ReconConfig` from pyproject, environment and overrides.

    ``db_path`` in ``[tool.feerecon]`` is ignored here; see
    :func:`resolve_db_path`. Overrides whose value is ``None`` are skipped
    so CLI options left unset do not clobber file or env values.
    """
    if pyproject_path is None:
        pyproject_path = Path.cwd() / "pyproject.toml"
    if environ is None:
        environ = dict(os.environ)

    values: dict[str, Any] = {}

    for key, raw in _read_pyproject_table(pyproject_path).items():
        if key == "db_path":
            continue
        if key not in _FIELD_TYPES:
            raise ConfigError(f"Unknown [tool.feerecon] key: {key}")
        values[key] = _coerce(key, raw)

    for name in _FIELD_TYPES:
        env_key = ENV_PREFIX + name.upper()
        if env_key in environ:
            values[name] = _coerce(name, environ[env_key])

    for key, raw in overrides.items():
        if key not in _FIELD_TYPES:
            raise ConfigError(f"Unknown configuration key: {key}")
        if raw is not None:
            values[key] = _coerce(key, raw)

    return replace(ReconConfig(), **values)


def resolve_db_path(
    explicit: str | Path | None = None,
    pyproject_path: Path | None = None,
    environ: dict[str, str] | None = None,
) -> Path:
    """Return the database path: explicit > env > pyproject > default."""
    if explicit:
        return Path(explicit)
    if environ is None:
        environ = dict(os.environ)
    if environ.get(DB_PATH_ENV):
        return Path(environ[DB_PATH_ENV])
    if pyproject_path is None:
        pyproject_path = Path.cwd() / "pyproject.toml"
    table = _read_pyproject_table(pyproject_path)
    if table.get("db_path"):
        return Path(str(table["db_path"]))
    return Path(DEFAULT_DB_PATH)
