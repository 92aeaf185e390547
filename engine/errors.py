"""Error hierarchy for distribution operations."""

from typing import Hashable, Iterable


class DistributionError(Exception):
    """Base error for smart distribution operations."""


class EmptyInputError(DistributionError):
    """Nothing to distribute: the structure list (or distribution) is empty."""


class NotFoundError(DistributionError):
    """A distribution, or a structure inside a distribution, does not exist."""


class StaleReferenceError(DistributionError):
    """Structure ids attached to a distribution no longer resolve in the catalog.

    Attributes:
        missing_ids: The ids that failed to resolve, in sorted order.
    """

    def __init__(self, distribution_id: str, missing_ids: Iterable[Hashable]) -> None:
        self.distribution_id = distribution_id
        self.missing_ids = sorted(missing_ids, key=str)
        preview = ", ".join(str(i) for i in self.missing_ids[:10])
        more = f" (+{len(self.missing_ids) - 10} more)" if len(self.missing_ids) > 10 else ""
        super().__init__(
            f"Distribution {distribution_id}: {len(self.missing_ids)} structure(s) "
            f"no longer in the catalog: {preview}{more}"
        )


class StoreUnavailableError(DistributionError):
    """Persistence I/O failed; the write was rolled back."""


class InvalidParametersError(DistributionError, ValueError):
    """Caller supplied an unusable threshold, partner list or structure set."""
