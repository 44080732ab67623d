"""Configuration loading from CLI args, env vars, and optional YAML file."""

import logging
import os
import re
from dataclasses import dataclass

import yaml

from mailpath.correlator import (
    DEFAULT_DERIVED_PATTERNS,
    DEFAULT_IGNORE_TAGS,
    NEXT,
    DerivedPattern,
)
from mailpath.sources import DEFAULT_LOG_GLOB

logger = logging.getLogger(__name__)


class ConfigError(Exception):
    """Configuration that cannot be used."""


def _parse_bool(value: str) -> bool:
    return str(value).strip().lower() in ("true", "1", "yes")


@dataclass(frozen=True)
class Config:
    default_glob: str = DEFAULT_LOG_GLOB
    workers: int = 4
    year: int | None = None  # year of the newest syslog line; None: derive from today
    bracket_fallback: bool = True
    ignore_tags: tuple[str, ...] = DEFAULT_IGNORE_TAGS
    derived_patterns: tuple[DerivedPattern, ...] = DEFAULT_DERIVED_PATTERNS
    log_level: str = "WARNING"


def load_yaml_config(path: str | None) -> dict:
    """Load settings from a YAML file. Returns empty dict if no path."""
    if not path:
        return {}
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except FileNotFoundError:
        logger.warning("Config file %s not found, using defaults", path)
        return {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"{path}: expected a mapping at the top level")
    logger.info("Loaded YAML config from %s", path)
    return data


def _build_patterns(entries: list) -> tuple[DerivedPattern, ...]:
    extra = []
    for i, r in enumerate(entries):
        try:
            extra.append(DerivedPattern.build(
                name=r.get("name", f"custom-{i}"),
                pattern=r["pattern"],
                direction=r.get("direction", NEXT),
            ))
        except (KeyError, TypeError, AttributeError) as e:
            raise ConfigError(f"derived_patterns[{i}]: missing or malformed entry ({e})") from e
        except (re.error, ValueError) as e:
            raise ConfigError(f"derived_patterns[{i}]: {e}") from e
    return DEFAULT_DERIVED_PATTERNS + tuple(extra)


def _pick(cli_value, env_key: str, yaml_data: dict, yaml_key: str, default):
    if cli_value is not None:
        return cli_value
    if env_key in os.environ:
        return os.environ[env_key]
    return yaml_data.get(yaml_key, default)


def load_config(cli_args, yaml_data: dict) -> Config:
    """Build Config from CLI args, env vars, and parsed YAML data.

    CLI args win over env vars, which win over the YAML file.
    """
    defaults = Config()
    try:
        workers = int(_pick(getattr(cli_args, "workers", None), "MAILPATH_WORKERS",
                            yaml_data, "workers", defaults.workers))
        year = _pick(getattr(cli_args, "year", None), "MAILPATH_YEAR",
                     yaml_data, "year", defaults.year)
        if year is not None:
            year = int(year)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"workers and year must be integers: {e}") from e
    if workers < 1:
        raise ConfigError(f"workers must be at least 1, got {workers}")

    fallback = _pick(getattr(cli_args, "bracket_fallback", None), "MAILPATH_BRACKET_FALLBACK",
                     yaml_data, "bracket_fallback", defaults.bracket_fallback)

    ignore_tags = yaml_data.get("ignore_tags", list(defaults.ignore_tags))
    if not isinstance(ignore_tags, list):
        raise ConfigError("ignore_tags must be a list")

    return Config(
        default_glob=os.environ.get("MAILPATH_LOG_GLOB", yaml_data.get("default_glob", defaults.default_glob)),
        workers=workers,
        year=year,
        bracket_fallback=_parse_bool(fallback),
        ignore_tags=tuple(str(t) for t in ignore_tags),
        derived_patterns=_build_patterns(yaml_data.get("derived_patterns") or []),
        log_level=str(os.environ.get("MAILPATH_LOG_LEVEL", yaml_data.get("log_level", defaults.log_level))).upper(),
    )
