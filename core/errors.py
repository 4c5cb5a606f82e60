"""
Error taxonomy for the station pipeline.

Only DataUnavailableError is meant to reach users; everything else is
recovered (fallback tiers, cache fallback) and logged.
"""


class PipelineError(Exception):
    """Base class for pipeline errors."""


class LoadError(PipelineError):
    """Station reference data is malformed or unreachable."""


class FetchError(PipelineError):
    """A live fetch failed."""


class FetchTimeout(FetchError):
    """A live fetch exceeded its network-class timeout."""

    def __init__(self, resource: str, timeout_s: float):
        super().__init__(f"{resource} fetch timed out after {timeout_s:.0f}s")
        self.resource = resource
        self.timeout_s = timeout_s


class CacheError(PipelineError):
    """The storage layer failed on read, write or clear."""

    def __init__(self, namespace: str, operation: str, cause: object = None):
        detail = f": {cause}" if cause is not None else ""
        super().__init__(f"cache {operation} failed in '{namespace}'{detail}")
        self.namespace = namespace
        self.operation = operation


class DataUnavailableError(PipelineError):
    """Live fetch failed and no usable cached payload exists."""
