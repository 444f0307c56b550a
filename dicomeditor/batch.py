"""
batch.py - Directory walker and batch driver.

Expands a selection (a single file or a directory tree) into files and runs
one operation per file, collecting a BatchReport.  A failure on one file is
logged and recorded; the walk always continues.  Files are visited in
sorted order and hidden entries (including our own temp files) are never
visited.

Operations are plain callables ``op(in_file, out_file) -> AnonymizerStatus``;
the factories at the bottom of this module build the three the editor
offers: anonymize, fix VRs and clear preamble.
"""

import enum
import logging
import os
import re
import shutil
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Iterable, Iterator, Mapping, Optional, Union

from dicomeditor.anonymizer import AnonymizerStatus, DicomAnonymizer, Status
from dicomeditor.corrector import correct
from dicomeditor.errors import NotDicomError
from dicomeditor.preamble import clear_preamble

logger = logging.getLogger(__name__)

PathLike = Union[str, os.PathLike]
Operation = Callable[[Path, Path], AnonymizerStatus]

NO_PHI_SUFFIX = "-no-phi"
_UID_NAME = re.compile(r"[\d.]+")


class Outcome(enum.Enum):
    OK = "OK"
    SKIP = "SKIP"
    FAILED = "FAILED"
    QUARANTINE = "QUARANTINE"
    NOT_A_DIRECTORY = "NOT_A_DIRECTORY"


_FROM_STATUS = {
    Status.OK: Outcome.OK,
    Status.SKIP: Outcome.SKIP,
    Status.QUARANTINE: Outcome.QUARANTINE,
}


class RenamePolicy(enum.Enum):
    IN_PLACE = "in-place"
    SUFFIX_NO_PHI = "suffix-no-phi"
    SOP_INSTANCE_UID = "sop-instance-uid"


# ---------------------------------------------------------------------------
# Data classes
# ---------------------------------------------------------------------------

@dataclass
class FileResult:
    """Outcome of one file in a batch."""
    path: Path
    outcome: Outcome
    message: str = ""
    output: Optional[Path] = None
    duration_s: float = 0.0


@dataclass
class BatchReport:
    """Aggregate report produced at the end of a batch run."""
    results: list[FileResult] = field(default_factory=list)
    elapsed_s: float = 0.0
    cancelled: bool = False

    def add(self, result: FileResult) -> None:
        self.results.append(result)

    def count(self, outcome: Outcome) -> int:
        return sum(1 for r in self.results if r.outcome is outcome)

    @property
    def total_files(self) -> int:
        return len(self.results)

    @property
    def succeeded(self) -> bool:
        """True when every file ended OK or SKIP."""
        return all(r.outcome in (Outcome.OK, Outcome.SKIP) for r in self.results)

    def summary(self) -> str:
        lines = [
            "=" * 50,
            "BATCH SUMMARY",
            "=" * 50,
            f"Total files          : {self.total_files}",
            f"OK                   : {self.count(Outcome.OK)}",
            f"Skipped              : {self.count(Outcome.SKIP)}",
            f"Quarantined          : {self.count(Outcome.QUARANTINE)}",
            f"Failed               : {self.count(Outcome.FAILED)}",
            f"Total time           : {self.elapsed_s:.2f}s",
        ]
        if self.cancelled:
            lines.append("Run cancelled before all files were visited.")
        problems = [
            r for r in self.results
            if r.outcome not in (Outcome.OK, Outcome.SKIP)
        ]
        if problems:
            lines.append("\nProblem files:")
            for r in problems:
                lines.append(f"  - {r.path} [{r.outcome.value}]: {r.message}")
        return "\n".join(lines)


# ---------------------------------------------------------------------------
# Selection
# ---------------------------------------------------------------------------

@dataclass
class FileFilter:
    """
    Accept files by extension.

    ``extensions`` holds lower-case suffixes; ``""`` accepts files with no
    extension, and names made only of digits and dots (SOP Instance UID
    style) count as having none.  ``None`` accepts every file.
    """
    extensions: Optional[frozenset[str]] = None

    @classmethod
    def of(cls, extensions: Optional[Iterable[str]]) -> "FileFilter":
        if extensions is None:
            return cls()
        return cls(frozenset(e.lower() for e in extensions))

    def accepts(self, path: Path) -> bool:
        if path.name.startswith("."):
            return False
        if self.extensions is None:
            return True
        suffix = "" if _UID_NAME.fullmatch(path.name) else path.suffix.lower()
        return suffix in self.extensions


def iter_files(
    root: Path,
    file_filter: Optional[FileFilter] = None,
    recursive: bool = False,
    on_error: Optional[Callable[[Path, OSError], None]] = None,
) -> Iterator[Path]:
    """
    Yield the files under *root* in sorted order.

    A directory that cannot be listed is passed to *on_error* (or logged)
    and the walk goes on.  Each directory is entered at most once, so a
    symlink pointing back up the tree does not loop.
    """
    file_filter = file_filter or FileFilter()
    if root.is_file():
        if file_filter.accepts(root):
            yield root
        return
    yield from _walk(root, file_filter, recursive, on_error, set())


def _walk(
    directory: Path,
    file_filter: FileFilter,
    recursive: bool,
    on_error: Optional[Callable[[Path, OSError], None]],
    seen: set[tuple[int, int]],
) -> Iterator[Path]:
    try:
        st = os.stat(directory)
        names = sorted(os.listdir(directory))
    except OSError as exc:
        if on_error is not None:
            on_error(directory, exc)
        else:
            logger.error("Cannot list %s: %s", directory, exc)
        return
    if (st.st_dev, st.st_ino) in seen:
        logger.warning("Skipping %s: directory already visited", directory)
        return
    seen.add((st.st_dev, st.st_ino))

    for name in names:
        if name.startswith("."):
            continue
        path = directory / name
        if path.is_dir():
            if recursive:
                yield from _walk(path, file_filter, recursive, on_error, seen)
        elif file_filter.accepts(path):
            yield path


def no_phi_name(path: Path) -> Optional[Path]:
    """
    Return the ``-no-phi`` sibling of *path*, or None if *path* already is one.

    The suffix goes before the last extension; a name that is all digits
    and dots gets it appended to the whole name.
    """
    name = path.name
    if name.endswith(NO_PHI_SUFFIX):
        return None
    if _UID_NAME.fullmatch(name):
        return path.with_name(name + NO_PHI_SUFFIX)
    stem, dot, ext = name.rpartition(".")
    if not dot:
        stem, ext = name, ""
    if stem.endswith(NO_PHI_SUFFIX):
        return None
    return path.with_name(stem + NO_PHI_SUFFIX + (dot + ext if dot else ""))


# ---------------------------------------------------------------------------
# Driver
# ---------------------------------------------------------------------------

def listing_error_recorder(report: BatchReport) -> Callable[[Path, OSError], None]:
    """Return an ``on_error`` callback that records unlistable directories as FAILED."""

    def on_error(directory: Path, exc: OSError) -> None:
        logger.error("Cannot list %s: %s", directory, exc)
        report.add(FileResult(directory, Outcome.FAILED, str(exc) or type(exc).__name__))

    return on_error


def _process_one(path: Path, op: Operation, rename_policy: RenamePolicy) -> FileResult:
    start = time.time()
    result = FileResult(path=path, outcome=Outcome.FAILED)

    if rename_policy is RenamePolicy.SUFFIX_NO_PHI:
        target = no_phi_name(path)
        if target is None:
            result.outcome = Outcome.SKIP
            result.message = "Already de-identified"
            logger.info("Skipping %s: already de-identified", path)
            return result
    else:
        target = path

    try:
        status = op(path, target)
        result.outcome = _FROM_STATUS[status.status]
        result.message = status.message
        result.output = status.output
    except Exception as exc:
        result.message = str(exc) or type(exc).__name__
        logger.exception("Error processing %s: %s", path, exc)

    result.duration_s = time.time() - start
    return result


def run(
    root: PathLike,
    op: Operation,
    file_filter: Optional[FileFilter] = None,
    recursive: bool = False,
    rename_policy: RenamePolicy = RenamePolicy.IN_PLACE,
    should_cancel: Optional[Callable[[], bool]] = None,
) -> BatchReport:
    """
    Run *op* over every file selected by *root*.

    Parameters
    ----------
    root : path
        A file or a directory.
    op : callable
        ``op(in_file, out_file) -> AnonymizerStatus``.
    file_filter : FileFilter, optional
        Which files to visit.  Defaults to all non-hidden files.
    recursive : bool
        Descend into subdirectories.
    rename_policy : RenamePolicy
        How the output file is named.  ``SOP_INSTANCE_UID`` only has an
        effect with an operation built by :func:`anonymize_operation`.
    should_cancel : callable, optional
        Consulted between files; returning True stops the walk.

    Returns
    -------
    BatchReport
    """
    root = Path(root)
    report = BatchReport()
    batch_start = time.time()

    if not root.exists():
        logger.error("Input not found: %s", root)
        return report

    logger.info("Starting batch over %s (%s)", root, rename_policy.value)
    on_error = listing_error_recorder(report)
    for path in iter_files(root, file_filter, recursive, on_error):
        if should_cancel is not None and should_cancel():
            logger.warning("Batch cancelled before %s", path)
            report.cancelled = True
            break
        report.add(_process_one(path, op, rename_policy))

    report.elapsed_s = time.time() - batch_start
    logger.info(report.summary())
    return report


# ---------------------------------------------------------------------------
# Operations
# ---------------------------------------------------------------------------

def anonymize_operation(
    script,
    lookup_table: Optional[Mapping[str, str]] = None,
    integer_table=None,
    force_ivrle: bool = False,
    rename_policy: RenamePolicy = RenamePolicy.IN_PLACE,
) -> Operation:
    """
    Build an anonymize operation.  The script is compiled here, once.

    Raises
    ------
    ScriptEvalError, ScriptParseError
        If the script does not compile.
    """
    anonymizer = DicomAnonymizer(script, lookup_table, integer_table)
    rename = rename_policy is RenamePolicy.SOP_INSTANCE_UID

    def op(in_file: Path, out_file: Path) -> AnonymizerStatus:
        return anonymizer.anonymize(
            in_file, out_file, force_ivrle=force_ivrle, rename_to_sopiuid=rename
        )

    return op


def fix_vrs_operation() -> Operation:
    return correct


def clear_preamble_operation() -> Operation:
    """Clear the preamble; a file without the DICM magic is skipped."""

    def op(in_file: Path, out_file: Path) -> AnonymizerStatus:
        if out_file != in_file:
            shutil.copyfile(in_file, out_file)
        try:
            clear_preamble(out_file)
        except NotDicomError as exc:
            if out_file != in_file:
                out_file.unlink()
            logger.info("Skipping %s: %s", in_file, exc)
            return AnonymizerStatus(Status.SKIP, "Not a DICOM Part 10 file")
        return AnonymizerStatus(Status.OK, output=out_file)

    return op
