"""
Exception hierarchy for the geo-loader pipeline.

Only fatal conditions are raised. Recoverable per-record problems (a malformed
shape record, an invalid coordinate, an unsupported CAD entity) are recorded
as ProcessingWarning entries instead; see core.types.WarningCollector.
"""

from typing import Optional


class GeoLoaderError(Exception):
    """Base exception for all pipeline errors"""

    def __init__(self, message: str, source: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.source = source


class InvalidHeaderError(GeoLoaderError):
    """Raised when a container header is truncated or carries a bad magic number"""

    def __init__(self, format_name: str, detail: str, source: Optional[str] = None):
        message = f"Invalid {format_name} header: {detail}"
        super().__init__(message, source=source)
        self.format_name = format_name
        self.detail = detail


class UnsupportedFormatError(GeoLoaderError):
    """Raised when no parser accepts a file, or a file lacks required structure"""

    def __init__(self, file_name: str, reason: str = "no parser available"):
        message = f"Unsupported file {file_name}: {reason}"
        super().__init__(message, source=file_name)
        self.file_name = file_name
        self.reason = reason


class UnknownCoordinateSystemError(GeoLoaderError):
    """Raised when a coordinate system code is not registered"""

    def __init__(self, code: str):
        message = f"Coordinate system not registered: {code}"
        super().__init__(message)
        self.code = code


class MemoryLimitExceededError(GeoLoaderError):
    """Raised when the chunk manager exceeds its configured memory ceiling"""

    def __init__(self, used_mb: float, limit_mb: float, feature_count: int):
        message = (
            f"Memory usage ({used_mb:.0f}MB) exceeds limit ({limit_mb:.0f}MB) "
            f"after {feature_count} features"
        )
        super().__init__(message)
        self.used_mb = used_mb
        self.limit_mb = limit_mb
        self.feature_count = feature_count


class PipelineCancelledError(GeoLoaderError):
    """Raised when a caller cancels a running load between chunks"""

    def __init__(self, processed: int):
        super().__init__(f"Processing cancelled after {processed} features")
        self.processed = processed
