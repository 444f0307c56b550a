"""
fileio.py - Atomic file output.

Every file this package produces is written to an exclusively created
temporary sibling, flushed to disk, and then renamed over the final path.
An interrupted run therefore never leaves a half-written DICOM object (or
script) at the destination.
"""

import logging
import os
import tempfile
from pathlib import Path
from typing import Callable, BinaryIO, Union

from pydicom.dataset import Dataset

logger = logging.getLogger(__name__)

PathLike = Union[str, os.PathLike]

# Prefix shared by every temporary sibling; the batch walker ignores these.
TEMP_PREFIX = ".dcmedit-"


def atomic_write(path: PathLike, write: Callable[[BinaryIO], None]) -> Path:
    """
    Call *write* with a binary file object and move the result to *path*.

    The temporary file lives in the destination directory so that the
    final ``os.replace`` is a same-filesystem rename.

    Raises
    ------
    OSError
        If the temporary file cannot be created, written, synced or
        renamed.  The temporary file is removed in that case.
    """
    target = Path(path)
    fd, temp_name = tempfile.mkstemp(
        prefix=TEMP_PREFIX, suffix=".tmp", dir=str(target.parent)
    )
    try:
        with os.fdopen(fd, "wb") as f:
            write(f)
            f.flush()
            os.fsync(f.fileno())
        os.replace(temp_name, target)
    except BaseException:
        if os.path.exists(temp_name):
            os.unlink(temp_name)
        raise
    logger.debug("Wrote %s", target)
    return target


def atomic_write_text(path: PathLike, text: str, encoding: str = "utf-8") -> Path:
    """Atomically replace *path* with *text*."""
    data = text.encode(encoding)
    return atomic_write(path, lambda f: f.write(data))


def atomic_save(ds: Dataset, path: PathLike) -> Path:
    """Atomically write a pydicom dataset to *path*."""
    return atomic_write(path, ds.save_as)
