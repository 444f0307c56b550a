"""
script.py - In-memory model of a de-identification profile.

A script is an ordered list of directives.  Each directive is one of four
kinds, identified by the letter used in the on-disk format:

    p   parameter   named text referenced by other directives as @NAME
    e   element     script expression applied to one DICOM element
    r   remove      group-level removal policy
    k   keep        group-level retention policy

The kinds form a closed set, so a directive is a single dataclass tagged by
its ``kind`` rather than a class hierarchy.  Order matters: element
directives are applied in declared order and the editor saves them back in
the same order.
"""

import logging
import re
from dataclasses import dataclass, replace
from typing import Iterator, Optional

logger = logging.getLogger(__name__)

PARAM = "p"
ELEMENT = "e"
REMOVE = "r"
KEEP = "k"
KINDS = (PARAM, ELEMENT, REMOVE, KEEP)

REMOVE_SELECTORS = ("privategroups", "unspecifiedelements", "overlays")

_TAG_RE = re.compile(r"^[0-9A-Fa-f]{8}$")
_GROUP_RE = re.compile(r"^(?:group)?([0-9A-Fa-f]{1,4})$", re.IGNORECASE)


@dataclass(frozen=True)
class Directive:
    """One line of a de-identification script."""
    kind: str
    key: str                 # parameter name, element tag, or group selector
    body: str = ""
    enabled: bool = True     # always True for parameters
    label: str = ""          # human-readable element name (e only)

    def __post_init__(self):
        for name in ("key", "body", "label"):
            object.__setattr__(self, name, getattr(self, name).strip())
        if self.kind not in KINDS:
            raise ValueError(f"Unknown directive kind {self.kind!r}")
        if not self.key:
            raise ValueError(f"Directive of kind {self.kind!r} has an empty key")
        if self.kind == ELEMENT:
            if not _TAG_RE.match(self.key):
                raise ValueError(f"Element tag must be 8 hex digits, got {self.key!r}")
            object.__setattr__(self, "key", self.key.upper())
        if self.kind == PARAM and not self.enabled:
            object.__setattr__(self, "enabled", True)

    @property
    def identity(self) -> tuple[str, str]:
        return (self.kind, self.key)

    @property
    def tag(self) -> int:
        """The element tag as an integer (element directives only)."""
        if self.kind != ELEMENT:
            raise AttributeError(f"{self.kind!r} directives have no tag")
        return int(self.key, 16)

    @property
    def group(self) -> Optional[int]:
        """The group number selected by a keep directive, or None."""
        if self.kind != KEEP:
            return None
        return parse_group(self.key)


def parse_group(selector: str) -> Optional[int]:
    """
    Turn a keep selector into a group number.

    ``group18``, ``group0018``, ``0018`` and ``18`` all select group 0x0018.
    Returns None for selectors that name no group.
    """
    m = _GROUP_RE.match(selector.strip())
    if not m:
        return None
    return int(m.group(1), 16)


def parameter(name: str, body: str) -> Directive:
    return Directive(PARAM, name, body)


def element(tag: str, body: str, label: str = "", enabled: bool = True) -> Directive:
    return Directive(ELEMENT, tag, body, enabled, label)


def remove(selector: str, body: str = "", enabled: bool = True) -> Directive:
    return Directive(REMOVE, selector, body, enabled)


def keep(selector: str, body: str = "", enabled: bool = True) -> Directive:
    return Directive(KEEP, selector, body, enabled)


class Script:
    """
    Ordered, identity-unique collection of directives.

    Directives are immutable; the editing helpers replace them in place so
    the script keeps its order.
    """

    def __init__(self, directives: Optional[list[Directive]] = None):
        self._directives: list[Directive] = []
        self._index: dict[tuple[str, str], int] = {}
        for d in directives or []:
            self.add(d)

    # ------------------------------------------------------------------
    # Collection protocol
    # ------------------------------------------------------------------

    def __iter__(self) -> Iterator[Directive]:
        return iter(self._directives)

    def __len__(self) -> int:
        return len(self._directives)

    def __eq__(self, other) -> bool:
        if not isinstance(other, Script):
            return NotImplemented
        return self._directives == other._directives

    def __repr__(self) -> str:
        return f"Script({len(self._directives)} directives)"

    def __contains__(self, identity: tuple[str, str]) -> bool:
        return self._normalize(identity) in self._index

    # ------------------------------------------------------------------
    # Access and editing
    # ------------------------------------------------------------------

    @staticmethod
    def _normalize(identity: tuple[str, str]) -> tuple[str, str]:
        kind, key = identity
        return (kind, key.upper() if kind == ELEMENT else key)

    def add(self, directive: Directive) -> None:
        """
        Append a directive.

        Raises
        ------
        ValueError
            If a directive with the same (kind, key) is already present.
        """
        if directive.identity in self._index:
            raise ValueError(f"Duplicate directive {directive.identity}")
        self._index[directive.identity] = len(self._directives)
        self._directives.append(directive)

    def get(self, kind: str, key: str) -> Optional[Directive]:
        pos = self._index.get(self._normalize((kind, key)))
        return None if pos is None else self._directives[pos]

    def _replace(self, kind: str, key: str, **changes) -> Directive:
        identity = self._normalize((kind, key))
        pos = self._index.get(identity)
        if pos is None:
            raise KeyError(f"No directive {identity}")
        updated = replace(self._directives[pos], **changes)
        self._directives[pos] = updated
        return updated

    def set_enabled(self, kind: str, key: str, enabled: bool) -> Directive:
        return self._replace(kind, key, enabled=enabled)

    def set_body(self, kind: str, key: str, body: str) -> Directive:
        return self._replace(kind, key, body=body.strip())

    def uncheck_all(self) -> None:
        """Disable every element, remove and keep directive."""
        self._directives = [
            d if d.kind == PARAM else replace(d, enabled=False)
            for d in self._directives
        ]

    def checked(self) -> list[Directive]:
        """Directives that take effect: all parameters plus enabled e/r/k."""
        return [d for d in self._directives if d.enabled]

    def of_kind(self, kind: str) -> list[Directive]:
        return [d for d in self._directives if d.kind == kind]

    def parameters(self) -> dict[str, str]:
        return {d.key: d.body for d in self._directives if d.kind == PARAM}

    def copy(self) -> "Script":
        return Script(list(self._directives))
