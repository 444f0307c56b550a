"""
patientid.py - Stamp PatientID from the directory layout.

For a tree laid out as ``root/<patient>/<anything>/file.dcm`` every DICOM
file gets ``PatientID = <patient>``: the first directory name below the
root.  Files directly in the root have no such directory and are reported
as failures.
"""

import logging
import os
import time
from pathlib import Path
from typing import Optional, Union

import pydicom
from pydicom.errors import InvalidDicomError

from dicomeditor.batch import (
    BatchReport,
    FileFilter,
    FileResult,
    Outcome,
    iter_files,
    listing_error_recorder,
)
from dicomeditor.fileio import atomic_save

logger = logging.getLogger(__name__)

BASE_DIRECTORY_MESSAGE = "cannot process files in base directory"


def path_depth(path: Path) -> int:
    """Number of components of an absolute path, not counting the anchor."""
    return len(path.parts) - 1


def _set_one(path: Path, base_depth: int) -> FileResult:
    start = time.time()
    result = _stamp(path, base_depth)
    result.duration_s = time.time() - start
    return result


def _stamp(path: Path, base_depth: int) -> FileResult:
    result = FileResult(path=path, outcome=Outcome.FAILED)
    parts = path.parts[1:]

    if len(parts) < base_depth + 2:
        result.message = BASE_DIRECTORY_MESSAGE
        logger.warning("%s: %s", path, BASE_DIRECTORY_MESSAGE)
        return result

    patient_id = parts[base_depth]
    try:
        ds = pydicom.dcmread(str(path))
    except InvalidDicomError:
        result.outcome = Outcome.SKIP
        result.message = "Not a DICOM Part 10 file"
        logger.info("Skipping %s: not a DICOM Part 10 file", path)
        return result
    except Exception as exc:
        result.message = str(exc)
        logger.exception("Error reading %s: %s", path, exc)
        return result

    if ds.get("PatientID") == patient_id:
        result.outcome = Outcome.SKIP
        result.message = "PatientID unchanged"
        return result

    try:
        ds.PatientID = patient_id
        atomic_save(ds, path)
    except Exception as exc:
        result.message = str(exc)
        logger.exception("Error writing %s: %s", path, exc)
        return result

    logger.info("Set PatientID of %s to %s", path, patient_id)
    result.outcome = Outcome.OK
    result.output = path
    return result


def set_patient_ids(
    root: Union[str, os.PathLike],
    base_depth: Optional[int] = None,
    file_filter: Optional[FileFilter] = None,
) -> BatchReport:
    """
    Set PatientID in every DICOM file below *root*.

    Parameters
    ----------
    root : path
        The base directory.  Must be a directory.
    base_depth : int, optional
        Depth of the base directory, as returned by :func:`path_depth`.
        Defaults to the depth of *root*; the PatientID is the path component
        at this index.
    file_filter : FileFilter, optional
        Which files to visit.

    Returns
    -------
    BatchReport
        A single NOT_A_DIRECTORY result when *root* is not a directory.
    """
    root = Path(root).absolute()
    report = BatchReport()
    batch_start = time.time()

    if not root.is_dir():
        logger.error("%s is not a directory", root)
        report.add(FileResult(root, Outcome.NOT_A_DIRECTORY, f"{root} is not a directory"))
        return report

    if base_depth is None:
        base_depth = path_depth(root)

    on_error = listing_error_recorder(report)
    for path in iter_files(root, file_filter, recursive=True, on_error=on_error):
        report.add(_set_one(path, base_depth))

    report.elapsed_s = time.time() - batch_start
    logger.info(report.summary())
    return report
