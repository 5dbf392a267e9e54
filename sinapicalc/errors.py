"""Exception taxonomy for acquisition, parsing, ingestion and resolution.

Only run-level failures are raised. Row-level and batch-level problems are
collected as strings on the import result and never interrupt a run.
"""

from __future__ import annotations


class SinapiError(Exception):
    """Base class for all sinapicalc errors."""


class AcquisitionError(SinapiError):
    """The reference archive could not be obtained or opened.

    Covers network errors, non-200 responses, redirect loops, undersized
    downloads, corrupt ZIP files and archives without a reference workbook.
    No graph mutation has happened when this is raised.
    """


class ParseStructureError(SinapiError):
    """A required sheet, header or column is missing from the input."""


class IngestionCancelled(SinapiError):
    """The caller asked the run to stop; raised only between units of work."""


class CompositionNotFound(SinapiError, LookupError):
    """The requested composition does not exist in the store."""


class ResourceNotFound(SinapiError, LookupError):
    """The requested resource does not exist in the store."""
