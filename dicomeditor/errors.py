"""
errors.py - Exception hierarchy for the DICOM editor.

Every error raised deliberately by this package derives from
DicomEditorError, so callers can catch the whole family at the batch
boundary.  Operating-system failures (read, write, rename) are not wrapped:
they surface as the builtin OSError and propagate to the caller.
"""


class DicomEditorError(Exception):
    """Base class for all DICOM editor errors."""


class NotDicomError(DicomEditorError):
    """The file does not carry the ``DICM`` magic number at offset 128."""


class ScriptParseError(DicomEditorError):
    """The canonical script text is corrupt beyond recovery."""


class ScriptEvalError(DicomEditorError):
    """
    A script expression cannot be compiled or evaluated.

    Raised for unknown functions, unbound parameters, wrong argument
    counts and actions used inside a larger expression.
    """


class LookupMissError(DicomEditorError):
    """A ``@lookup`` key is absent from the table and no fallback is scripted."""

    def __init__(self, key: str):
        self.key = key
        super().__init__(f"No lookup table entry for {key!r}")


class DatasetError(DicomEditorError):
    """pydicom rejected an operation on the dataset."""


class ScriptSaveError(DicomEditorError):
    """
    The anonymizer script could not be persisted.

    This is the only fatal error class: a silently lost profile could let
    later runs leak PHI, so the operator must be told to stop and
    investigate.
    """
