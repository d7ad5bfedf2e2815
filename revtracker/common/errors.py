class RevisionTrackerError(Exception):
    """Base class for everything the revision workflow raises on purpose."""

    pass


class NoActiveDocument(RevisionTrackerError):
    """Raised when the document to diff cannot be identified or read. Nothing is written."""

    pass


class RevisionInProgress(RevisionTrackerError):
    """Raised when a second run for the same document starts while the first is still running."""

    pass


class PatchError(RevisionTrackerError):
    """
    Base class for problems with a stored patch.
    The workflow treats all of these as recoverable, it falls back to an empty previous version.
    """

    pass


class MalformedPatch(PatchError):
    """The patch text cannot be parsed."""

    pass


class PatchMismatch(PatchError):
    """The patch parses, but it does not belong to the text it is applied to."""

    pass


class StorageError(RevisionTrackerError):
    pass


class StorageReadFailure(StorageError):
    pass


class StorageWriteFailure(StorageError):
    """Raised when a patch could not be persisted. The chain did not advance."""

    pass
