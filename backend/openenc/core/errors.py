"""Exception hierarchy shared by the ingestion pipeline.

Every error raised on purpose by the package derives from OpenEncError so
callers can contain chart-scoped failures with a single ``except`` clause
while letting programming errors propagate.

Example:
    Contain a chart failure and keep going:
        >>> from openenc.core import errors
        >>> try:
        ...     raise errors.CoverageUnresolvableError("US5WA22M")
        ... except errors.OpenEncError as exc:
        ...     print(f"chart failed: {exc}")
"""


class OpenEncError(Exception):
    """Base class for all errors raised by the package."""


class InvalidScaleError(OpenEncError, ValueError):
    """A scale denominator was zero, negative or not a finite number."""


class DecodeError(OpenEncError):
    """A chart cell could not be decoded into features."""


class CoverageUnresolvableError(OpenEncError):
    """A chart has no geometry from which to derive its coverage."""


class PoolTimeoutError(OpenEncError):
    """No store connection became available within the acquire timeout."""


class SchemaConflictError(OpenEncError):
    """A layer identifier cannot be turned into a safe table name."""
