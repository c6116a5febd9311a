"""
Error types for the VFH view library builder.

Fatal problems (unreadable views, malformed angle files, empty training sets,
index and persistence failures) are exceptions derived from VFHSearchError.
Degenerate neighbourhoods are not fatal and are reported as warnings.
"""

from typing import Optional


class VFHSearchError(Exception):
    """Base class for all fatal errors raised by the pipeline."""


class InvalidArgument(VFHSearchError, ValueError):
    """A query or build parameter is outside its valid range."""


class SourceError(VFHSearchError):
    """An error tied to one input file."""

    def __init__(self, source, reason: str):
        self.source = str(source)
        self.reason = reason
        super().__init__(f"{self.source}: {reason}")


class UnreadableSource(SourceError):
    """Point cloud or angle file is missing, has an unknown format or is corrupt."""


class MalformedMetadata(SourceError):
    """Angle file exists but does not hold two parseable floats."""


class EmptyInput(VFHSearchError):
    """An index was requested over zero rows."""


class EmptyTrainingSet(EmptyInput):
    """No view reached the indexing stage."""


class IndexBuildFailure(VFHSearchError):
    """The feature matrix or a saved index cannot back a search index."""


class PersistenceFailure(VFHSearchError):
    """Writing one of the output artifacts failed; nothing was published."""

    def __init__(self, path, reason: str, cause: Optional[BaseException] = None):
        self.path = str(path)
        self.reason = reason
        self.cause = cause
        super().__init__(f"{self.path}: {reason}")


class DegenerateNeighborhood(UserWarning):
    """Some points had too few neighbours for a plane fit (non-fatal)."""
