class ReconciliationError(Exception):
    """Base class for every error the reconciliation service raises."""


class ValidationError(ReconciliationError):
    """The caller sent something we refuse to store or resolve."""


class StoreError(ReconciliationError):
    """A contact store operation failed."""


class ClusterIntegrityError(StoreError):
    """The stored link graph cannot be resolved to a single primary."""
