"""Exceptions raised by the import pipeline.

Everything deriving from ArchiveImportError is fatal to the job that raised
it. Degrading failures (a snapshot, a page, a tag row) never surface as
exceptions outside the importer that hit them.
"""


class ArchiveImportError(Exception):
    """Base class for errors that fail an import job."""


class SourceUnreachableError(ArchiveImportError):
    """The feed or API could not be fetched at all."""


class InvalidFeedError(ArchiveImportError):
    """The source answered, but not with a parseable feed."""


class EmptyFeedError(ArchiveImportError):
    """The feed parsed but contains no posts."""


class UnrecognizedFormatError(ArchiveImportError):
    """An import file matches none of the supported JSON shapes."""


class PersistenceError(ArchiveImportError):
    """The blog or import record owning a job could not be written."""
