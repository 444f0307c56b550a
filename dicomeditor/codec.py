"""
codec.py - Conversions between the representations of an anonymizer script.

    canonical text  <->  tree (ElementTree)  <->  Script  <->  properties

The canonical text is what lives on disk::

    <script>
     <p t="PROFILENAME">CTP Clinical Trial Default</p>
     <e en="T" t="00100010" n="PatientName">@empty()</e>
     <r en="T" t="privategroups">Remove private groups</r>
     <k en="T" t="group18">Keep group 18</k>
    </script>

The properties form is a flat, insertion-ordered ``dict[str, str]``::

    p.PROFILENAME=CTP Clinical Trial Default
    e.00100010=@empty()
    enabled.e.00100010=T
    label.e.00100010=PatientName
    r.privategroups=Remove private groups
    enabled.r.privategroups=T

Every representation preserves directive order, so no side channel is
needed to recover the sequence of the editor's rows.
"""

import logging
import os
import re
import xml.etree.ElementTree as ET
from pathlib import Path
from typing import Mapping, Union
from xml.sax.saxutils import escape

from dicomeditor.errors import ScriptParseError, ScriptSaveError
from dicomeditor.fileio import atomic_write_text
from dicomeditor.script import KINDS, PARAM, Directive, Script

logger = logging.getLogger(__name__)

PathLike = Union[str, os.PathLike]

ROOT_TAG = "script"

ENABLED_PREFIX = "enabled."
LABEL_PREFIX = "label."

SAVE_FAILURE_WARNING = (
    "An error occurred while saving the anonymizer script. Stop the program "
    "now and have the configuration checked: until it is, anonymization may "
    "be damaged in a way that lets PHI leave this workstation."
)

# An ampersand that does not start an entity or character reference.
_BARE_AMP_RE = re.compile(r"&(?!(?:amp|lt|gt|quot|apos);|#\d+;|#x[0-9A-Fa-f]+;)")

_ATTR_ENTITIES = {'"': "&quot;"}


# ---------------------------------------------------------------------------
# Tree form
# ---------------------------------------------------------------------------

def to_tree(script: Script) -> ET.Element:
    """Build the ElementTree form of *script*."""
    root = ET.Element(ROOT_TAG)
    for d in script:
        el = ET.SubElement(root, d.kind)
        if d.kind != PARAM:
            el.set("en", "T" if d.enabled else "F")
        el.set("t", d.key)
        if d.label:
            el.set("n", d.label)
        el.text = d.body
    return root


def from_tree(root: ET.Element) -> Script:
    """
    Build a Script from its tree form.

    Children that cannot become a directive are skipped with a warning;
    only a wrong root element is fatal.

    Raises
    ------
    ScriptParseError
        If the root element is not ``<script>``.
    """
    if root.tag != ROOT_TAG:
        raise ScriptParseError(f"Root element is <{root.tag}>, expected <{ROOT_TAG}>")

    script = Script()
    for child in root:
        if child.tag not in KINDS:
            logger.warning("Ignoring unknown script element <%s>", child.tag)
            continue
        key = (child.get("t") or "").strip()
        try:
            directive = Directive(
                kind=child.tag,
                key=key,
                body=(child.text or "").strip(),
                enabled=child.get("en", "T").strip().upper() == "T",
                label=(child.get("n") or "").strip(),
            )
            script.add(directive)
        except ValueError as exc:
            logger.warning("Skipping script element <%s t=%r>: %s", child.tag, key, exc)
    return script


# ---------------------------------------------------------------------------
# Canonical text
# ---------------------------------------------------------------------------

def dumps(script: Script) -> str:
    """Render *script* as canonical text, one directive per line."""
    lines = [f"<{ROOT_TAG}>\n"]
    for d in script:
        attrs = ""
        if d.kind != PARAM:
            attrs += f' en="{"T" if d.enabled else "F"}"'
        attrs += f' t="{escape(d.key, _ATTR_ENTITIES)}"'
        if d.label:
            attrs += f' n="{escape(d.label, _ATTR_ENTITIES)}"'
        lines.append(f" <{d.kind}{attrs}>{escape(d.body)}</{d.kind}>\n")
    lines.append(f"</{ROOT_TAG}>\n")
    return "".join(lines)


def loads(text: str) -> Script:
    """
    Parse canonical text.

    Blank text is an empty script.  Text containing bare ``&`` characters
    (written by hand, or by tools that skipped escaping) is repaired and
    parsed again before giving up.

    Raises
    ------
    ScriptParseError
        If the XML cannot be parsed even after repair, or the root element
        is wrong.
    """
    if not text.strip():
        return Script()
    try:
        root = ET.fromstring(text)
    except ET.ParseError as first_error:
        repaired = _BARE_AMP_RE.sub("&amp;", text)
        if repaired == text:
            raise ScriptParseError(f"Malformed script: {first_error}") from first_error
        try:
            root = ET.fromstring(repaired)
        except ET.ParseError as exc:
            raise ScriptParseError(f"Malformed script: {exc}") from exc
        logger.warning("Script contained unescaped '&' characters; repaired on load")
    return from_tree(root)


def load(path: PathLike) -> Script:
    """
    Read a script file.

    A missing or empty file yields an empty script so that a fresh
    installation can start editing immediately.

    Raises
    ------
    ScriptParseError
        On unrecoverable XML corruption.
    """
    p = Path(path)
    if not p.exists():
        logger.warning("Script file %s not found; starting with an empty script", p)
        return Script()
    with open(p, "r", encoding="utf-8") as f:
        text = f.read()
    script = loads(text)
    logger.debug("Loaded %d directives from %s", len(script), p)
    return script


def save(script: Script, path: PathLike) -> Path:
    """
    Atomically write *script* to *path* as canonical text.

    Raises
    ------
    ScriptSaveError
        If the file cannot be written.  This is fatal: the caller must show
        SAVE_FAILURE_WARNING to the operator.
    """
    try:
        written = atomic_write_text(path, dumps(script))
    except OSError as exc:
        logger.critical("%s (%s: %s)", SAVE_FAILURE_WARNING, path, exc)
        raise ScriptSaveError(f"Unable to save anonymizer script to {path}: {exc}") from exc
    logger.info("Saved %d directives to %s", len(script), written)
    return written


# ---------------------------------------------------------------------------
# Properties form
# ---------------------------------------------------------------------------

def to_properties(script: Script) -> dict[str, str]:
    """Flatten *script* into the ordered properties form."""
    props: dict[str, str] = {}
    for d in script:
        name = f"{d.kind}.{d.key}"
        props[name] = d.body
        if d.kind != PARAM:
            props[ENABLED_PREFIX + name] = "T" if d.enabled else "F"
        if d.label:
            props[LABEL_PREFIX + name] = d.label
    return props


def from_properties(props: Mapping[str, str]) -> Script:
    """
    Rebuild a Script from the properties form.

    Directives appear in the order their ``kind.key`` entries appear.  A
    directive without an ``enabled.`` entry is enabled.

    Raises
    ------
    ScriptParseError
        If a key does not name a known directive kind.
    """
    script = Script()
    for name, body in props.items():
        if name.startswith(ENABLED_PREFIX) or name.startswith(LABEL_PREFIX):
            continue
        kind, sep, key = name.partition(".")
        if not sep or kind not in KINDS:
            raise ScriptParseError(f"Unrecognized script property {name!r}")
        enabled = props.get(ENABLED_PREFIX + name, "T").strip().upper() == "T"
        label = props.get(LABEL_PREFIX + name, "")
        try:
            script.add(Directive(kind, key, body, enabled, label))
        except ValueError as exc:
            raise ScriptParseError(f"Invalid script property {name!r}: {exc}") from exc
    return script
