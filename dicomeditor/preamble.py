"""
preamble.py - Clear the 128-byte preamble of a DICOM Part-10 file.

The preamble is reserved for application use and may carry anything,
including identifying text or an executable header.  Clearing it is a
direct binary edit: the file keeps its length and nothing at or beyond
offset 132 is touched.
"""

import logging
import os
from typing import Union

from dicomeditor.errors import NotDicomError

logger = logging.getLogger(__name__)

PREAMBLE_LENGTH = 128
MAGIC = b"DICM"


def has_dicm_magic(path: Union[str, os.PathLike]) -> bool:
    """True if *path* carries ``DICM`` at offset 128."""
    with open(path, "rb") as f:
        f.seek(PREAMBLE_LENGTH)
        return f.read(len(MAGIC)) == MAGIC


def clear_preamble(path: Union[str, os.PathLike]) -> None:
    """
    Overwrite bytes 0-127 of *path* with zeros.

    Raises
    ------
    NotDicomError
        If bytes 128-131 are not ``DICM``; the file is left untouched.
    OSError
        If the file cannot be opened for reading and writing.
    """
    with open(path, "r+b") as f:
        f.seek(PREAMBLE_LENGTH)
        if f.read(len(MAGIC)) != MAGIC:
            raise NotDicomError(f"{path} is not a DICOM Part 10 file")
        f.seek(0)
        f.write(bytes(PREAMBLE_LENGTH))
        f.flush()
        os.fsync(f.fileno())
    logger.debug("Cleared preamble of %s", path)
