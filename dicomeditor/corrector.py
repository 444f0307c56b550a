"""
corrector.py - Repair value representations ("Fix VRs").

Some modalities write standard elements with the wrong explicit VR (a
PatientName stored as OB, a Rows element stored as UN).  pydicom then hands
back raw bytes instead of a typed value, and every downstream tool,
including the anonymizer's scripts, sees garbage.  This module re-decodes
such elements with the VR from the DICOM dictionary and resolves the
ambiguous VRs (``US or SS`` and friends) from the dataset context.

Private elements are left alone: their dictionary VR is unknown.
"""

import logging
import os
from pathlib import Path
from typing import Union

import pydicom
from pydicom.datadict import dictionary_VR
from pydicom.dataelem import DataElement, RawDataElement
from pydicom.dataset import Dataset
from pydicom.errors import InvalidDicomError
from pydicom.filewriter import correct_ambiguous_vr
from pydicom.values import convert_value

from dicomeditor.anonymizer import AnonymizerStatus, Status
from dicomeditor.errors import DatasetError
from dicomeditor.fileio import atomic_save

logger = logging.getLogger(__name__)

PathLike = Union[str, os.PathLike]

_RAW_VRS = {"UN", "OB", "OW"}


def correct_dataset(ds: Dataset, little_endian: bool = True) -> int:
    """
    Re-decode mis-typed elements of *ds* in place.

    Returns
    -------
    int
        The number of elements whose VR was changed.

    Raises
    ------
    DatasetError
        If pydicom cannot decode an element with its dictionary VR.
    """
    fixed = 0
    for elem in list(ds):
        if elem.VR == "SQ":
            for item in elem.value:
                fixed += correct_dataset(item, little_endian)
            continue
        tag = elem.tag
        if tag.is_private or tag.element == 0:
            continue
        try:
            dict_vr = dictionary_VR(tag)
        except KeyError:
            continue
        if " or " in dict_vr or dict_vr == elem.VR or dict_vr in _RAW_VRS:
            continue
        if elem.VR not in _RAW_VRS or not isinstance(elem.value, (bytes, bytearray)):
            continue
        raw = RawDataElement(
            tag, dict_vr, len(elem.value), bytes(elem.value), 0, False, little_endian
        )
        try:
            value = convert_value(dict_vr, raw)
        except Exception as exc:
            raise DatasetError(f"Cannot decode {tag} as {dict_vr}: {exc}") from exc
        ds[tag] = DataElement(tag, dict_vr, value)
        logger.debug("Corrected %s: %s -> %s", tag, elem.VR, dict_vr)
        fixed += 1
    return fixed


def correct(in_file: PathLike, out_file: PathLike) -> AnonymizerStatus:
    """
    Fix the VRs of *in_file* and write the result to *out_file*.

    Raises
    ------
    OSError
        On read or write failure.
    DatasetError
        If an element cannot be re-decoded.
    """
    try:
        ds = pydicom.dcmread(str(in_file))
    except InvalidDicomError as exc:
        logger.info("Skipping %s: not a DICOM Part 10 file (%s)", in_file, exc)
        return AnonymizerStatus(Status.SKIP, "Not a DICOM Part 10 file")

    tsyntax = ds.file_meta.get("TransferSyntaxUID")
    little_endian = tsyntax.is_little_endian if tsyntax is not None else True
    fixed = correct_dataset(ds, little_endian)
    correct_ambiguous_vr(ds, little_endian)

    target = atomic_save(ds, out_file)
    logger.info("Corrected %d element(s) in %s", fixed, in_file)
    return AnonymizerStatus(Status.OK, f"{fixed} element(s) corrected", output=Path(target))
