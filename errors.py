from typing import Optional


class HarnessError(Exception):
    """Base class for faults raised by the harness or its ledger store."""

    def __init__(self, message: str, unit: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.unit = unit

    def __str__(self) -> str:
        if self.unit is None:
            return self.message
        return f"{self.unit}: {self.message}"


class ConfigurationError(HarnessError):
    """Invalid workload settings or worker pool assignment."""


class LedgerError(HarnessError):
    """A fault reported by the ledger store."""


class ProvisioningError(LedgerError):
    """Store unreachable or account seeding failed. Fatal before any worker starts."""


class TransactionError(LedgerError):
    """begin/mutate/commit failed on a worker connection."""


class QueryError(LedgerError):
    """The read-only invariant query failed."""
