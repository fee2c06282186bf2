"""Operator key handling for signing release transactions."""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional, Protocol

from eth_account import Account
from eth_account.signers.local import LocalAccount

logger = logging.getLogger(__name__)


class SignerError(RuntimeError):
    pass


class Signer(Protocol):
    @property
    def address(self) -> str: ...

    def sign_transaction(self, tx: dict[str, Any]) -> bytes: ...


@dataclass(frozen=True)
class LocalSigner:
    account: LocalAccount

    @property
    def address(self) -> str:
        return self.account.address

    def sign_transaction(self, tx: dict[str, Any]) -> bytes:
        signed = Account.sign_transaction(tx, self.account.key)
        raw = getattr(signed, "raw_transaction", None) or getattr(signed, "rawTransaction", None)
        if raw is None:  # pragma: no cover
            raise SignerError("Signed transaction missing raw bytes")
        return bytes(raw)


def load_signer(
    *,
    private_key: Optional[str] = None,
    keystore_path: Optional[Path] = None,
    keystore_password: Optional[str] = None,
    expected_address: Optional[str] = None,
) -> Optional[LocalSigner]:
    """Build the operator signer from a raw key or an encrypted keystore.

    Returns ``None`` when neither is configured. A keystore that cannot be read
    or decrypted raises :class:`SignerError`.
    """
    signer: Optional[LocalSigner] = None
    if private_key:
        try:
            signer = LocalSigner(Account.from_key(private_key))
        except ValueError as exc:
            raise SignerError("Operator private key is invalid") from exc
    elif keystore_path and keystore_password:
        path = Path(keystore_path).expanduser()
        try:
            with path.open("r", encoding="utf-8") as handle:
                data = json.load(handle)
            decrypted = Account.decrypt(data, keystore_password)
        except (OSError, ValueError) as exc:
            raise SignerError(f"Failed to decrypt keystore {path}: {exc}") from exc
        signer = LocalSigner(Account.from_key(decrypted))

    if signer is None:
        return None

    expected = (expected_address or "").strip()
    if expected and signer.address.lower() != expected.lower():
        raise SignerError(
            f"Operator key address mismatch: got {signer.address}, expected {expected}"
        )
    logger.info("Loaded operator key for %s", signer.address)
    return signer


__all__ = ["LocalSigner", "Signer", "SignerError", "load_signer"]
