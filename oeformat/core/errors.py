"""
Errors raised while writing or reading Open Ephys format files.

All of them derive from :class:`OEFormatError` so a caller can catch every
format problem at once, and from the closest builtin exception so generic
handlers (``except FileNotFoundError``, ``except IndexError``) keep working.
"""


class OEFormatError(IOError):
    """Base error for the Open Ephys format readers and writers."""


class OEFileNotFoundError(OEFormatError, FileNotFoundError):
    """The structural index or a data file is missing, or its root tag is wrong."""


class MalformedRecordError(OEFormatError, ValueError):
    """A binary record has the wrong length or a corrupted record marker."""


class OutOfRangeError(OEFormatError, IndexError):
    """A block or sample index lies beyond the recorded extent."""


class WriteFailedError(OEFormatError):
    """
    An I/O error happened while appending to a data file.

    The current writing session must be closed; a partially written block
    cannot be repaired afterwards.
    """


class IndexInconsistentError(OEFormatError):
    """The structural index and the data files disagree."""
