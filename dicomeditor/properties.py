"""
properties.py - Line-oriented ``key=value`` files.

Two files in the editor use this format: the lookup table that maps real
identifiers to pseudonyms, and the persistent UI-state file
(``dicomeditor.properties``).  The format is deliberately small:

- ``#`` or ``!`` at the start of a line marks a comment;
- blank lines are ignored;
- the key ends at the first ``=`` (or ``:`` when no ``=`` is present);
- surrounding whitespace is stripped from keys and values;
- a duplicated key keeps the value defined last.
"""

import logging
import os
from pathlib import Path
from typing import Iterable, Optional, Union

from dicomeditor.fileio import atomic_write_text

logger = logging.getLogger(__name__)

PathLike = Union[str, os.PathLike]


def parse_properties(lines: Iterable[str]) -> dict[str, str]:
    """Parse properties text (an iterable of lines) into an ordered dict."""
    props: dict[str, str] = {}
    for lineno, raw in enumerate(lines, start=1):
        line = raw.strip()
        if not line or line[0] in "#!":
            continue
        sep = line.find("=")
        if sep == -1:
            sep = line.find(":")
        if sep == -1:
            logger.debug("Line %d has no separator; treating as empty value", lineno)
            key, value = line, ""
        else:
            key, value = line[:sep].strip(), line[sep + 1:].strip()
        if key in props:
            # Re-insert so the last definition also takes the last position.
            del props[key]
        props[key] = value
    return props


def load_properties(path: PathLike) -> dict[str, str]:
    """
    Read a properties file.

    A missing file yields an empty mapping; the caller decides whether
    that is worth a warning.
    """
    p = Path(path)
    if not p.exists():
        return {}
    with open(p, "r", encoding="utf-8") as f:
        return parse_properties(f)


def format_properties(props: dict[str, str]) -> str:
    return "".join(f"{key}={value}\n" for key, value in props.items())


def store_properties(props: dict[str, str], path: PathLike) -> Path:
    """Atomically write *props* to *path*, preserving key order."""
    return atomic_write_text(path, format_properties(props))


class ApplicationProperties:
    """
    Persistent UI state: window geometry, naming checkboxes, file paths.

    All values are strings.  Nothing is written until :meth:`store`.
    """

    def __init__(self, path: PathLike):
        self.path = Path(path)
        self._props = load_properties(self.path)

    def get(self, key: str, default: Optional[str] = None) -> Optional[str]:
        return self._props.get(key, default)

    def put(self, key: str, value: str) -> None:
        self._props[key] = value

    def get_flag(self, key: str, default: bool) -> bool:
        """
        Read a ``yes``/``no`` flag, recording *default* when it is missing.

        This mirrors the checkbox behaviour of the original editor: an
        absent flag is created with its default value.
        """
        value = self._props.get(key)
        if value is None:
            self._props[key] = "yes" if default else "no"
            return default
        return value.strip().lower() == "yes"

    def put_flag(self, key: str, value: bool) -> None:
        self._props[key] = "yes" if value else "no"

    def store(self) -> None:
        store_properties(self._props, self.path)
        logger.debug("Stored application properties in %s", self.path)

    def as_dict(self) -> dict[str, str]:
        return dict(self._props)
