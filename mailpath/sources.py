"""Generator-based source reading, glob expansion, and transparent decompression."""

import bz2
import glob
import gzip
import logging
import lzma
import os
import zlib
from typing import Generator

from mailpath.models import Source

logger = logging.getLogger(__name__)

DEFAULT_LOG_GLOB = "/var/log/**/mail*.log*"

_OPENERS = {
    ".gz": gzip.open,
    ".bz2": bz2.open,
    ".bz": bz2.open,
    ".xz": lzma.open,
    ".lzma": lzma.open,
}

# Errors a damaged or truncated archive raises mid-read.
READ_ERRORS = (OSError, EOFError, zlib.error, lzma.LZMAError, UnicodeError)


class SourceError(Exception):
    """A source could not be opened or read to the end."""

    def __init__(self, label: str, reason: str):
        super().__init__(f"{label}: {reason}")
        self.label = label
        self.reason = reason


def _is_glob(raw: str) -> bool:
    return any(c in raw for c in ("*", "?", "["))


def expand_paths(raw_paths: list[str], default_glob: str = DEFAULT_LOG_GLOB) -> list[str]:
    """Expand globs and deduplicate, keeping first-seen order.

    Plain paths are kept even when they do not exist; opening them later
    reports a per-source error instead of aborting the run.
    Raises FileNotFoundError if expansion produces zero paths.
    """
    if not raw_paths:
        raw_paths = [default_glob]

    expanded = []
    seen = set()

    for raw in raw_paths:
        candidates = sorted(glob.glob(raw, recursive=True)) if _is_glob(raw) else [raw]
        for path in candidates:
            if os.path.isdir(path):
                continue
            if path not in seen:
                seen.add(path)
                expanded.append(path)

    if not expanded:
        raise FileNotFoundError(
            f"No log files found matching {', '.join(raw_paths)}"
        )

    return expanded


def read_lines(path: str) -> Generator[str, None, None]:
    """Yield decoded lines from ``path``, decompressing by suffix.

    Undecodable bytes are replaced. Any failure to open or finish reading is
    raised as SourceError.
    """
    opener = _OPENERS.get(os.path.splitext(path)[1].lower(), open)
    try:
        with opener(path, "rt", encoding="utf-8", errors="replace") as f:
            yield from f
    except READ_ERRORS as e:
        raise SourceError(path, str(e) or type(e).__name__) from e


def open_source(path: str) -> Source:
    """Wrap ``path`` as a Source that is re-read on every pass."""
    return Source(label=path, opener=lambda: read_lines(path))


def open_sources(paths: list[str]) -> list[Source]:
    return [open_source(p) for p in paths]
