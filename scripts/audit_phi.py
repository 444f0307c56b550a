"""
audit_phi.py - Check a folder of DICOM files for leftover PHI.

Walks a folder (recursively) and reports which identifying elements still
carry values, whether private groups or overlays survived, and whether any
file still has a non-zero preamble.  Run it on the output of
``dicomeditor anonymize`` before files leave the workstation.

Usage
-----
    python scripts/audit_phi.py                          # scans data/incoming/
    python scripts/audit_phi.py path/to/dicom/folder     # custom folder
"""

import logging
import os
import sys
from collections import Counter
from pathlib import Path

import pydicom
from pydicom.errors import InvalidDicomError

# Ensure repo root is on sys.path
_REPO_ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, _REPO_ROOT)

from dicomeditor.anonymizer import OVERLAY_GROUPS  # noqa: E402
from dicomeditor.batch import FileFilter, iter_files, no_phi_name  # noqa: E402
from dicomeditor.preamble import PREAMBLE_LENGTH  # noqa: E402

logging.basicConfig(level=logging.INFO, format="%(levelname)-8s %(message)s")
logger = logging.getLogger(__name__)

IDENTITY_KEYWORDS = [
    "PatientName",
    "PatientID",
    "PatientBirthDate",
    "PatientAddress",
    "AccessionNumber",
    "InstitutionName",
    "ReferringPhysicianName",
    "OperatorsName",
]


def audit_folder(folder: str, processed_only: bool = False) -> dict:
    """
    Scan the DICOM files under *folder* and report what identifying content
    remains.

    Parameters
    ----------
    folder : str
        Directory to scan, recursively.
    processed_only : bool
        Only look at ``-no-phi`` files (the anonymizer's renamed outputs).

    Returns
    -------
    dict
        Per-keyword value counts, per-file private/overlay counts, files
        with a non-zero preamble and files that could not be read.
    """
    if not os.path.isdir(folder):
        logger.error("Folder not found: %s", folder)
        return {}

    tag_values: dict[str, Counter] = {k: Counter() for k in IDENTITY_KEYWORDS}
    private_counts: dict[str, int] = {}
    overlay_files: list[str] = []
    dirty_preambles: list[str] = []
    failed_files: list[str] = []
    total_files = 0

    def unlistable(directory, exc):
        failed_files.append(f"{os.path.relpath(directory, folder)}: {exc}")

    dicom_files = FileFilter.of([".dcm", ""])
    for path in iter_files(Path(folder), dicom_files, recursive=True, on_error=unlistable):
        if processed_only and no_phi_name(path) is not None:
            continue
        name = os.path.relpath(path, folder)
        try:
            ds = pydicom.dcmread(str(path))
        except InvalidDicomError:
            failed_files.append(f"{name}: not a DICOM Part 10 file")
            continue
        except Exception as exc:
            failed_files.append(f"{name}: {exc}")
            continue

        total_files += 1
        for keyword in IDENTITY_KEYWORDS:
            val = str(ds.get(keyword, "")).strip()
            if val:
                tag_values[keyword][val] += 1
        private = [elem for elem in ds if elem.tag.is_private]
        if private:
            private_counts[name] = len(private)
        if any(elem.tag.group in OVERLAY_GROUPS for elem in ds):
            overlay_files.append(name)
        if ds.preamble and ds.preamble != bytes(PREAMBLE_LENGTH):
            dirty_preambles.append(name)

    return {
        "folder": folder,
        "total_files": total_files,
        "failed_files": failed_files,
        "tag_values": tag_values,
        "private_counts": private_counts,
        "overlay_files": overlay_files,
        "dirty_preambles": dirty_preambles,
    }


def print_report(results: dict) -> None:
    """Print a human-readable PHI audit report."""
    if not results:
        return

    print("=" * 60)
    print("PHI AUDIT REPORT")
    print("=" * 60)
    print(f"  Folder        : {results['folder']}")
    print(f"  Files scanned : {results['total_files']}")
    if results["failed_files"]:
        print(f"  Not readable  : {len(results['failed_files'])}")
    print()

    print("── Identity elements ──")
    populated = []
    for keyword in IDENTITY_KEYWORDS:
        values = results["tag_values"][keyword]
        if values:
            populated.append(keyword)
            for val, count in values.most_common(3):
                print(f"  {keyword}: \"{val}\" ({count} files), check")
        else:
            print(f"  {keyword}: (absent or empty)")

    print()
    private = results["private_counts"]
    if private:
        print(f"── Private elements in {len(private)} files "
              f"(max {max(private.values())} per file) ──")
    else:
        print("── Private elements: none ──")
    print(f"── Overlays in {len(results['overlay_files'])} files ──")
    print(f"── Non-zero preambles in {len(results['dirty_preambles'])} files ──")

    print()
    print("=" * 60)
    print("VERDICT")
    print("=" * 60)
    if populated or private or results["dirty_preambles"]:
        print("  ⚠  Identifying content remains.  Review the values above;")
        print("     pseudonyms written by the script are expected, real names")
        print("     and IDs are not.  To clean up, run:")
        print("       python -m dicomeditor anonymize <folder> -r")
        print("       python -m dicomeditor clear-preamble <folder> -r")
    else:
        print("  ✓  No identifying elements, private groups or preambles found.")
    print()


def main() -> None:
    if len(sys.argv) > 1:
        folder = sys.argv[1]
    else:
        folder = os.path.join(_REPO_ROOT, "data", "incoming")

    results = audit_folder(folder)
    print_report(results)


if __name__ == "__main__":
    main()
