"""
Custom exception hierarchy for the state reconciliation core.

Hierarchy:

    TradeStateError (base)
    ├── OperationalError      : transient (network, timeouts, failed responses)
    │   └── TransportFailure
    ├── DataError             : bad input or payload, never applied to the store
    │   ├── ValidationFailure
    │   ├── MalformedEventError
    │   └── EntityNotFoundError
    └── PartialBulkFailure    : some members of a bulk action failed remotely

Rules:
    - Store internals never raise for data reasons; superseded writes are
      reported in UpsertResult.rejected and logged, not raised.
    - OperationalError: never retried internally. The caller re-invokes.
    - ValidationFailure: raised before any store write.
    - Mutation failures reach the caller as typed outcomes carrying one of
      these errors.
"""
from typing import Dict, Optional


class TradeStateError(Exception):
    """Base exception for all reconciliation core errors."""
    pass


# ============ OPERATIONAL (transient) ============

class OperationalError(TradeStateError):
    """Transient error: network, timeouts, remote refusal."""
    pass


class TransportFailure(OperationalError):
    """A remote call failed, timed out, or returned success=False.

    Treatment: revert optimistic state (or leave the store untouched for
    snapshot fetches) and surface to the caller.
    """

    def __init__(self, message: str, *, timed_out: bool = False):
        super().__init__(message)
        self.timed_out = timed_out


# ============ DATA (bad input, skip) ============

class DataError(TradeStateError):
    """Bad data: user input, push events, snapshot entries."""
    pass


class ValidationFailure(DataError):
    """Rejected user input (e.g. non-numeric SL/TP magnitude).

    Raised before any optimistic write; the store never sees it.
    """
    pass


class MalformedEventError(DataError):
    """A push event or snapshot entry could not be interpreted."""
    pass


class EntityNotFoundError(DataError, KeyError):
    """Entity id is not present in the store."""

    def __init__(self, entity_id: str):
        super().__init__(entity_id)
        self.entity_id = entity_id

    def __str__(self) -> str:
        return f"Entity not found: {self.entity_id}"


# ============ BULK ============

class PartialBulkFailure(TradeStateError):
    """Some members of a bulk mutation failed remotely.

    The optimistic state is kept for every member and a reconciliation
    refresh is requested to converge on ground truth.
    """

    def __init__(self, failures: Dict[str, TradeStateError], total: int, refresh_requested: Optional[bool] = None):
        self.failures = dict(failures)
        self.total = total
        self.refresh_requested = refresh_requested
        super().__init__(f"{len(self.failures)} of {total} bulk members failed: {', '.join(sorted(self.failures))}")
