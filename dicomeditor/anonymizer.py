"""
anonymizer.py - Script-driven DICOM de-identification.

Applies a de-identification script (see script.py / codec.py) to a DICOM
Part-10 file and writes the rewritten object atomically.  The processing
order for one file is fixed:

1. Read the file with pydicom.  Anything that is not Part-10 is skipped.
2. Apply every enabled element directive, in declared order.
3. Apply the enabled group policies:
   - ``r privategroups``       removes odd-group elements;
   - ``r overlays``            removes groups 6000-60FF;
   - ``r unspecifiedelements`` removes elements no enabled ``e`` directive
     names, at the top level and inside ``@process()``ed sequences only;
     items of a sequence kept whole (``@keep()``) are left as they are;
   - ``k <group>``             retains a group and beats any of the above.
4. Optionally transcode to Implicit VR Little Endian.
5. Optionally name the output after its (new) SOP Instance UID.
6. Write through a temporary sibling and rename.

A lookup that misses without a scripted fallback quarantines the file:
nothing is written, because writing would leak the unmapped identifier.

IMPORTANT LIMITATIONS
---------------------
- Does NOT handle burned-in annotations (text overlaid on pixel data).
- Private groups are removed wholesale; there is no safe-private list.
"""

import enum
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping, Optional, Union

import pydicom
from pydicom.datadict import dictionary_VR
from pydicom.dataset import Dataset
from pydicom.errors import InvalidDicomError
from pydicom.sequence import Sequence
from pydicom.tag import BaseTag, Tag
from pydicom.uid import ImplicitVRLittleEndian

from dicomeditor import codec
from dicomeditor.errors import DatasetError, LookupMissError
from dicomeditor.expressions import (
    HASH_SALT_PARAM,
    Action,
    EvalContext,
    Expression,
    IntegerSource,
    compile_expression,
)
from dicomeditor.fileio import atomic_save
from dicomeditor.script import ELEMENT, KEEP, REMOVE, REMOVE_SELECTORS, Script

logger = logging.getLogger(__name__)

PathLike = Union[str, os.PathLike]

OVERLAY_GROUPS = range(0x6000, 0x6100)

_INT_VRS = {"US", "SS", "UL", "SL", "UV", "SV", "AT"}
_FLOAT_VRS = {"FL", "FD"}
_BYTE_VRS = {"OB", "OD", "OF", "OL", "OV", "OW", "UN"}


class Status(enum.Enum):
    OK = "OK"
    SKIP = "SKIP"
    QUARANTINE = "QUARANTINE"


@dataclass
class AnonymizerStatus:
    """Outcome of anonymizing one file."""
    status: Status
    message: str = ""
    output: Optional[Path] = None

    def is_ok(self) -> bool:
        return self.status is Status.OK

    def is_skip(self) -> bool:
        return self.status is Status.SKIP

    def is_quarantine(self) -> bool:
        return self.status is Status.QUARANTINE


# ---------------------------------------------------------------------------
# Compiled script
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ElementRule:
    tag: BaseTag
    expression: Expression


@dataclass
class CompiledScript:
    """
    A script reduced to what the anonymizer executes.

    Disabled directives are dropped here and never compiled; an element
    directive that is disabled behaves as if it were absent.
    """
    parameters: dict[str, str]
    rules: list[ElementRule] = field(default_factory=list)
    remove_private: bool = False
    remove_overlays: bool = False
    remove_unspecified: bool = False
    keep_groups: frozenset[int] = frozenset()

    @property
    def covered(self) -> frozenset[BaseTag]:
        return frozenset(rule.tag for rule in self.rules)

    @property
    def hash_salt(self) -> str:
        return self.parameters.get(HASH_SALT_PARAM, "")


def compile_script(script: Union[Script, Mapping[str, str]]) -> CompiledScript:
    """
    Compile a Script (or its properties form) once for repeated use.

    Raises
    ------
    ScriptEvalError
        If an enabled element expression is invalid.
    ScriptParseError
        If a properties mapping does not describe a script.
    """
    if not isinstance(script, Script):
        script = codec.from_properties(script)

    parameters = script.parameters()
    compiled = CompiledScript(parameters=parameters)
    keep_groups: set[int] = set()

    for d in script.checked():
        if d.kind == ELEMENT:
            expr = compile_expression(d.body, parameters)
            compiled.rules.append(ElementRule(Tag(d.tag), expr))
        elif d.kind == REMOVE:
            if d.key == "privategroups":
                compiled.remove_private = True
            elif d.key == "overlays":
                compiled.remove_overlays = True
            elif d.key == "unspecifiedelements":
                compiled.remove_unspecified = True
            else:
                logger.warning(
                    "Ignoring remove directive %r (expected one of %s)",
                    d.key, ", ".join(REMOVE_SELECTORS),
                )
        elif d.kind == KEEP:
            group = d.group
            if group is None:
                logger.warning("Ignoring keep directive %r: not a group", d.key)
            else:
                keep_groups.add(group)

    compiled.keep_groups = frozenset(keep_groups)
    logger.debug(
        "Compiled script: %d element rules, keep groups %s",
        len(compiled.rules), sorted(f"{g:04X}" for g in keep_groups),
    )
    return compiled


# ---------------------------------------------------------------------------
# Element helpers
# ---------------------------------------------------------------------------

def _vr_for(tag: BaseTag) -> str:
    try:
        vr = dictionary_VR(tag)
    except KeyError:
        return "LO"
    # Ambiguous dictionary entries ("US or SS") take the first choice.
    return vr.split(" or ")[0]


def _convert(vr: str, text: str):
    if vr == "SQ":
        if text:
            raise DatasetError("A sequence element can only be emptied, removed or processed")
        return Sequence([])
    if not text:
        if vr in _BYTE_VRS:
            return b""
        if vr in _INT_VRS or vr in _FLOAT_VRS:
            return None
        return ""
    if vr in _BYTE_VRS:
        return text.encode("latin-1")
    try:
        if vr in _INT_VRS:
            values = [int(v) for v in text.split("\\")]
        elif vr in _FLOAT_VRS:
            values = [float(v) for v in text.split("\\")]
        else:
            return text
    except ValueError as exc:
        raise DatasetError(f"Value {text!r} is not valid for VR {vr}") from exc
    return values[0] if len(values) == 1 else values


def set_element(ds: Dataset, tag: BaseTag, text: str) -> None:
    """
    Set (or create) an element from script text.

    Raises
    ------
    DatasetError
        If pydicom rejects the value for the element's VR.
    """
    elem = ds.get(tag)
    vr = elem.VR if elem is not None else _vr_for(tag)
    value = _convert(vr, text)
    try:
        if elem is not None:
            elem.value = value
        else:
            ds.add_new(tag, vr, value)
    except (ValueError, TypeError, OverflowError) as exc:
        raise DatasetError(f"Cannot set {tag} ({vr}) to {text!r}: {exc}") from exc


# ---------------------------------------------------------------------------
# Dataset rewriting
# ---------------------------------------------------------------------------

class DicomAnonymizer:
    """
    Applies one compiled script to any number of files.

    Parameters
    ----------
    script : Script or Mapping[str, str]
        The script, as a model or in its properties form.
    lookup_table : Mapping[str, str]
        ``keyType/value -> replacement`` entries for @lookup.
    integer_table : IntegerSource, optional
        Persistent table for @integer; without one, @integer hashes.
    """

    def __init__(
        self,
        script: Union[Script, Mapping[str, str]],
        lookup_table: Optional[Mapping[str, str]] = None,
        integer_table: Optional[IntegerSource] = None,
    ):
        self.compiled = compile_script(script)
        self.lookup_table = lookup_table if lookup_table is not None else {}
        self.integer_table = integer_table

    def _context(self, ds: Dataset) -> EvalContext:
        return EvalContext(
            dataset=ds,
            tag=Tag(0),
            parameters=self.compiled.parameters,
            lookup=self.lookup_table,
            integer_table=self.integer_table,
            hash_salt=self.compiled.hash_salt,
        )

    def anonymize_dataset(self, ds: Dataset) -> Dataset:
        """
        Rewrite *ds* in place.

        Raises
        ------
        LookupMissError
            When a lookup misses and the script has no fallback.
        ScriptEvalError
            When an expression cannot be evaluated.
        DatasetError
            When pydicom rejects a replacement value.
        """
        processed = self._apply_rules(ds, self._context(ds))
        self._apply_group_policies(ds, processed, top_level=True)
        return ds

    def _apply_rules(self, ds: Dataset, ctx: EvalContext) -> set[BaseTag]:
        """Apply element rules; returns the tags of @process()ed sequences."""
        processed: set[BaseTag] = set()
        for rule in self.compiled.rules:
            elem = ds.get(rule.tag)
            if elem is None and not rule.expression.always:
                continue
            result = rule.expression.evaluate(ctx.at(ds, rule.tag))
            if result is Action.REMOVE:
                if elem is not None:
                    del ds[rule.tag]
                    logger.debug("Removed %s", rule.tag)
            elif result is Action.KEEP:
                continue
            elif result is Action.PROCESS:
                if elem is None or elem.VR != "SQ":
                    continue
                for item in elem.value:
                    nested = self._apply_rules(item, ctx)
                    self._apply_group_policies(item, nested, top_level=True)
                processed.add(rule.tag)
            else:
                set_element(ds, rule.tag, result)
                logger.debug("Set %s to %r", rule.tag, result)
        return processed

    def _apply_group_policies(
        self, ds: Dataset, processed: set[BaseTag], top_level: bool
    ) -> None:
        """
        Remove elements according to the r/k directives.

        ``unspecifiedelements`` applies to the top level of the dataset and
        to items of processed sequences (*top_level* is True for both);
        private and overlay removal reach into every sequence item.
        """
        c = self.compiled
        if not (c.remove_private or c.remove_overlays or c.remove_unspecified):
            return
        covered = c.covered
        for elem in list(ds):
            tag = elem.tag
            if tag.group in c.keep_groups:
                continue
            if (
                (c.remove_private and tag.group % 2 == 1)
                or (c.remove_overlays and tag.group in OVERLAY_GROUPS)
                or (c.remove_unspecified and top_level and tag not in covered)
            ):
                del ds[tag]
                continue
            if elem.VR == "SQ" and tag not in processed:
                for item in elem.value:
                    self._apply_group_policies(item, set(), top_level=False)

    # ------------------------------------------------------------------
    # Files
    # ------------------------------------------------------------------

    def anonymize(
        self,
        in_file: PathLike,
        out_file: PathLike,
        force_ivrle: bool = False,
        rename_to_sopiuid: bool = False,
    ) -> AnonymizerStatus:
        """
        Anonymize *in_file* into *out_file*.

        The input is never modified unless *out_file* is the same path, in
        which case it is replaced atomically.

        Raises
        ------
        OSError
            On any failure to read the input or write the output.
        ScriptEvalError, DatasetError
            On script evaluation or value conversion failures.
        """
        try:
            ds = pydicom.dcmread(str(in_file))
        except InvalidDicomError as exc:
            logger.info("Skipping %s: not a DICOM Part 10 file (%s)", in_file, exc)
            return AnonymizerStatus(Status.SKIP, "Not a DICOM Part 10 file")

        try:
            self.anonymize_dataset(ds)
        except LookupMissError as exc:
            logger.warning("Quarantined %s: %s", in_file, exc)
            return AnonymizerStatus(Status.QUARANTINE, str(exc))

        sop_uid = str(ds.get("SOPInstanceUID") or "")
        if sop_uid and hasattr(ds, "file_meta"):
            ds.file_meta.MediaStorageSOPInstanceUID = sop_uid

        if force_ivrle:
            tsyntax = ds.file_meta.get("TransferSyntaxUID")
            if tsyntax is not None and tsyntax.is_compressed:
                raise DatasetError(f"Cannot transcode compressed transfer syntax {tsyntax.name}")
            ds.file_meta.TransferSyntaxUID = ImplicitVRLittleEndian

        target = Path(out_file)
        if rename_to_sopiuid:
            if sop_uid:
                target = target.parent / f"{sop_uid}.dcm"
            else:
                logger.warning("%s has no SOPInstanceUID; keeping name %s", in_file, target.name)

        atomic_save(ds, target)
        logger.info("Anonymized %s → %s", in_file, target)
        return AnonymizerStatus(Status.OK, output=target)


def anonymize(
    in_file: PathLike,
    out_file: PathLike,
    script_props: Union[Script, Mapping[str, str]],
    lookup_table: Optional[Mapping[str, str]] = None,
    integer_table: Optional[IntegerSource] = None,
    force_ivrle: bool = False,
    rename_to_sopiuid: bool = False,
) -> AnonymizerStatus:
    """
    Anonymize a single file with a script in properties form.

    Convenience wrapper that compiles the script for one call; batch code
    should build a DicomAnonymizer once and reuse it.
    """
    anonymizer = DicomAnonymizer(script_props, lookup_table, integer_table)
    return anonymizer.anonymize(
        in_file, out_file, force_ivrle=force_ivrle, rename_to_sopiuid=rename_to_sopiuid
    )
