"""Exception types raised to callers of the graph store.

Data-integrity problems and metric failures are recovered where they occur
and never appear here; these exceptions cover what the caller must see.
"""


class SignographError(Exception):
    """Base class for all signograph errors."""


class PatchValidationError(SignographError):
    """A single proposed node or edge is malformed (e.g. missing id)."""

    def __init__(self, message: str, item: dict | None = None):
        super().__init__(message)
        self.item = item or {}


class MergeError(SignographError):
    """Merge targets are missing or identical."""


class OracleError(SignographError):
    """The AI oracle or embedding provider failed (transport or parse)."""


class StorageError(SignographError):
    """Snapshot persistence failed."""


class StaleResultError(SignographError):
    """An enrichment finished after a newer graph was already published."""

    def __init__(self, generation: int, latest: int):
        super().__init__(f"Enrichment generation {generation} superseded by {latest}")
        self.generation = generation
        self.latest = latest
