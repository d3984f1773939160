"""Exception hierarchy shared by stores, chain client, and job handlers."""
from __future__ import annotations


class LendwatchError(Exception):
    """Base class for all lendwatch errors."""


class TransientError(LendwatchError):
    """Store or RPC timeout/connection failure; safe to retry."""


class StaleStateError(LendwatchError):
    """On-chain state already moved past the action (closed or healthy)."""

    def __init__(self, message: str, *, not_active: bool = False) -> None:
        super().__init__(message)
        self.not_active = not_active


class TerminalError(LendwatchError):
    """A transaction reverted for a reason a retry will not fix."""


class BroadcastUnknownError(TerminalError):
    """A signed transaction was handed to the node but the reply was lost.

    It may still be mined, so the send must not be retried.
    """

    def __init__(self, message: str, tx_hash: str = "") -> None:
        super().__init__(message)
        self.tx_hash = tx_hash


class InvalidTransitionError(LendwatchError):
    """Attempted status change out of a terminal state."""


class PositionNotFoundError(LendwatchError):
    def __init__(self, position_id: str) -> None:
        super().__init__(f"Position {position_id} not found")
        self.position_id = position_id


class DuplicatePositionError(LendwatchError):
    """A position with this transaction hash already exists."""

    def __init__(self, tx_hash: str) -> None:
        super().__init__(f"Position with txHash {tx_hash} already exists")
        self.tx_hash = tx_hash


class UnrecoverableJobError(LendwatchError):
    """Raised by a job handler to fail the job without further attempts."""
