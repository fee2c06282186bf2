"""Error taxonomy shared by the chain client, ledger store and executor."""
from __future__ import annotations

from enum import Enum
from typing import Optional

import requests
from web3.exceptions import ContractLogicError, TimeExhausted


class WriteFailure(str, Enum):
    TIMEOUT = "timeout"
    CONNECTION = "connection"
    RATE_LIMITED = "rate_limited"
    NONCE = "nonce"
    UNDERPRICED = "underpriced"
    UNKNOWN = "unknown"
    INSUFFICIENT_FUNDS = "insufficient_funds"
    GAS_ESTIMATION = "gas_estimation"
    REVERTED = "reverted"
    NOT_SUPPORTED = "not_supported"

    @property
    def transient(self) -> bool:
        return self in _TRANSIENT


_TRANSIENT = frozenset(
    {
        WriteFailure.TIMEOUT,
        WriteFailure.CONNECTION,
        WriteFailure.RATE_LIMITED,
        WriteFailure.NONCE,
        WriteFailure.UNDERPRICED,
        WriteFailure.UNKNOWN,
    }
)


class KeeperError(RuntimeError):
    pass


class ChainReadError(KeeperError):
    def __init__(self, message: str, *, address: Optional[str] = None) -> None:
        super().__init__(message)
        self.address = address


class ChainWriteError(KeeperError):
    def __init__(
        self,
        message: str,
        *,
        cause: WriteFailure,
        tx_hash: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.cause = cause
        self.tx_hash = tx_hash

    @property
    def transient(self) -> bool:
        return self.cause.transient


class LedgerStoreError(KeeperError):
    pass


class LedgerConflictError(LedgerStoreError):
    """A conditional update matched no row: someone else changed the status first."""


# Substring checks against lowercased RPC error text, evaluated in order.
_MESSAGE_RULES: tuple[tuple[tuple[str, ...], WriteFailure], ...] = (
    (("insufficient funds",), WriteFailure.INSUFFICIENT_FUNDS),
    (("nonce too low", "replacement transaction underpriced", "already known"), WriteFailure.NONCE),
    (("rate limit", "too many requests", "429"), WriteFailure.RATE_LIMITED),
    (("timed out", "timeout"), WriteFailure.TIMEOUT),
    (("connection refused", "connection reset", "connection aborted", "max retries exceeded"), WriteFailure.CONNECTION),
    (("less than block base fee", "transaction underpriced", "fee cap less than"), WriteFailure.UNDERPRICED),
    (("execution reverted", "revert"), WriteFailure.REVERTED),
    (("gas required exceeds", "intrinsic gas", "out of gas"), WriteFailure.GAS_ESTIMATION),
)


def classify_exception(exc: BaseException) -> WriteFailure:
    """Map a web3/requests/RPC exception to a :class:`WriteFailure`."""
    if isinstance(exc, ChainWriteError):
        return exc.cause
    if isinstance(exc, TimeExhausted):
        return WriteFailure.TIMEOUT
    if isinstance(exc, (requests.exceptions.Timeout, TimeoutError)):
        return WriteFailure.TIMEOUT
    if isinstance(exc, (requests.exceptions.ConnectionError, ConnectionError)):
        return WriteFailure.CONNECTION
    message = str(exc).lower()
    if isinstance(exc, ContractLogicError):
        if "insufficient funds" in message:
            return WriteFailure.INSUFFICIENT_FUNDS
        return WriteFailure.REVERTED
    if isinstance(exc, requests.exceptions.HTTPError):
        response = getattr(exc, "response", None)
        if response is not None and response.status_code == 429:
            return WriteFailure.RATE_LIMITED
        return WriteFailure.CONNECTION
    for needles, failure in _MESSAGE_RULES:
        if any(needle in message for needle in needles):
            return failure
    return WriteFailure.UNKNOWN


__all__ = [
    "ChainReadError",
    "ChainWriteError",
    "KeeperError",
    "LedgerConflictError",
    "LedgerStoreError",
    "WriteFailure",
    "classify_exception",
]
