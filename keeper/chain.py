"""Per-contract chain access for the keeper, built on web3.py.

Reads are side-effect free and raise :class:`ChainReadError` on any RPC or
decoding failure. Writes are signed with the operator key, submitted once and
awaited until confirmed; they raise :class:`ChainWriteError` with a classified
cause and are never retried here.
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional, Union

from web3 import Web3
from web3.middleware.proof_of_authority import ExtraDataToPOAMiddleware

from .errors import ChainReadError, ChainWriteError, WriteFailure, classify_exception
from .models import AnyScheduledPayment, BatchPayment, ContractAmounts, InstantPayment
from .signer import Signer, load_signer

logger = logging.getLogger(__name__)

MIN_GAS_LIMIT = 21_000


def _view(name: str, outputs: list[dict[str, str]]) -> dict[str, Any]:
    return {
        "inputs": [],
        "name": name,
        "outputs": outputs,
        "stateMutability": "view",
        "type": "function",
    }


def _write(name: str) -> dict[str, Any]:
    return {
        "inputs": [],
        "name": name,
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function",
    }


_UINT = [{"internalType": "uint256", "name": "", "type": "uint256"}]
_BOOL = [{"internalType": "bool", "name": "", "type": "bool"}]

SCHEDULED_PAYMENT_ABI: list[dict[str, Any]] = [
    _view("releaseTime", _UINT),
    _view("released", _BOOL),
    _view("cancelled", _BOOL),
    _view(
        "getAmounts",
        [
            {"internalType": "uint256", "name": "amountToPayee", "type": "uint256"},
            {"internalType": "uint256", "name": "protocolFee", "type": "uint256"},
            {"internalType": "uint256", "name": "totalLocked", "type": "uint256"},
        ],
    ),
    _write("release"),
]

INSTANT_PAYMENT_ABI: list[dict[str, Any]] = [
    _view("executed", _BOOL),
]

RECURRING_PAYMENT_ABI: list[dict[str, Any]] = [
    _view("monthsPaid", _UINT),
    _view("nextPaymentTime", _UINT),
    _view("canExecute", _BOOL),
    _view("getTotalMonthsRemaining", _UINT),
    _view("cancelled", _BOOL),
    _write("executeMonthlyPayment"),
]


def _field(record: Any, name: str, default: Any = None) -> Any:
    if isinstance(record, dict):
        return record.get(name, default)
    try:
        return record[name]
    except (KeyError, TypeError, IndexError):
        return getattr(record, name, default)


@dataclass(frozen=True)
class TransactionReceipt:
    tx_hash: str
    block_number: Optional[int]
    status: int
    gas_used: Optional[int] = None

    @classmethod
    def from_web3(cls, tx_hash: str, receipt: Any) -> "TransactionReceipt":
        raw_status = _field(receipt, "status", 1)
        block = _field(receipt, "blockNumber")
        gas_used = _field(receipt, "gasUsed")
        return cls(
            tx_hash=tx_hash,
            block_number=int(block) if block is not None else None,
            status=1 if raw_status is None else int(raw_status),
            gas_used=int(gas_used) if gas_used is not None else None,
        )


class ChainClient:
    def __init__(
        self,
        rpc_url: str,
        chain_id: int,
        *,
        private_key: Optional[str] = None,
        keystore_path: Optional[Path] = None,
        keystore_password: Optional[str] = None,
        expected_address: Optional[str] = None,
        signer: Optional[Signer] = None,
        dry_run: bool = True,
        request_timeout: float = 20.0,
        receipt_timeout: int = 120,
        confirmations: int = 1,
        web3: Optional[Web3] = None,
    ) -> None:
        if web3 is None:
            web3 = Web3(Web3.HTTPProvider(rpc_url, request_kwargs={"timeout": request_timeout}))
            # Base/Polygon style chains carry extra data in block headers
            web3.middleware_onion.inject(ExtraDataToPOAMiddleware, layer=0)
        self.web3 = web3
        self.chain_id = chain_id
        self.dry_run = dry_run
        self.receipt_timeout = receipt_timeout
        self.confirmations = max(int(confirmations), 1)
        self._signer: Optional[Signer] = signer
        if signer is None:
            self._signer = load_signer(
                private_key=private_key,
                keystore_path=keystore_path,
                keystore_password=keystore_password,
                expected_address=expected_address,
            )
        if self._signer is None:
            logger.info("Chain client running without operator key (dry-run=%s)", dry_run)

    @classmethod
    def from_settings(cls, settings: Any) -> "ChainClient":
        return cls(
            settings.eth_rpc_url,
            settings.chain_id,
            private_key=settings.keeper_private_key,
            keystore_path=settings.keeper_keystore_path,
            keystore_password=settings.keeper_keystore_password,
            expected_address=settings.expected_operator_address,
            dry_run=settings.keeper_dry_run,
            request_timeout=settings.rpc_timeout_seconds,
            receipt_timeout=settings.receipt_timeout_seconds,
            confirmations=settings.confirmations,
        )

    @property
    def operator_address(self) -> Optional[str]:
        if self._signer is None:
            return None
        return self._signer.address

    def payment_contract(
        self, payment: AnyScheduledPayment
    ) -> Union["ScheduledPaymentContract", "BatchPaymentContract", "InstantPaymentContract"]:
        if isinstance(payment, InstantPayment):
            return InstantPaymentContract(self, payment.contract_address)
        if isinstance(payment, BatchPayment):
            return BatchPaymentContract(self, payment.contract_address)
        return ScheduledPaymentContract(self, payment.contract_address)

    def recurring_contract(self, address: str) -> "RecurringPaymentContract":
        return RecurringPaymentContract(self, address)

    def operator_balance(self) -> int:
        sender = self.operator_address
        if not sender:
            raise ChainReadError("No operator key configured")
        try:
            return int(self.web3.eth.get_balance(sender))
        except Exception as exc:
            raise ChainReadError(f"Failed to read operator balance: {exc}", address=sender) from exc

    def call(self, fn: Any, label: str, address: str) -> Any:
        try:
            return fn.call()
        except Exception as exc:
            raise ChainReadError(f"{label}() failed on {address}: {exc}", address=address) from exc

    def transact(self, fn: Any, label: str, address: str) -> Optional[TransactionReceipt]:
        """Sign, submit and await one contract call. Returns ``None`` in dry-run mode."""
        if self.dry_run:
            logger.info(
                "Dry-run transaction: would call %s() on %s (sender=%s)",
                label,
                address,
                self.operator_address,
            )
            return None
        if self._signer is None:
            raise ChainWriteError("No operator key configured", cause=WriteFailure.NOT_SUPPORTED)

        sender = self._signer.address
        eth = self.web3.eth
        try:
            nonce = eth.get_transaction_count(sender, "pending")
            fee_fields = self._fee_fields()
        except Exception as exc:
            raise self._write_error(exc, label, address) from exc

        try:
            estimate = int(fn.estimate_gas({"from": sender}))
        except Exception as exc:
            cause = classify_exception(exc)
            if not cause.transient and cause is not WriteFailure.INSUFFICIENT_FUNDS:
                cause = WriteFailure.GAS_ESTIMATION
            raise ChainWriteError(
                f"Gas estimation for {label}() on {address} failed: {exc}", cause=cause
            ) from exc
        gas_limit = max(MIN_GAS_LIMIT, estimate * 12 // 10)

        try:
            params: dict[str, Any] = {
                "from": sender,
                "nonce": int(nonce),
                "gas": gas_limit,
                "chainId": self.chain_id,
            }
            params.update(fee_fields)
            tx = fn.build_transaction(params)
            raw_tx = self._signer.sign_transaction(tx)
            tx_hash = Web3.to_hex(eth.send_raw_transaction(raw_tx))
        except Exception as exc:
            raise self._write_error(exc, label, address) from exc

        logger.info("Submitted %s() to %s (tx=%s nonce=%s gas=%s)", label, address, tx_hash, nonce, gas_limit)
        receipt = self._wait_for_receipt(tx_hash)
        if receipt.status != 1:
            raise ChainWriteError(
                f"{label}() on {address} reverted (tx={tx_hash})",
                cause=WriteFailure.REVERTED,
                tx_hash=tx_hash,
            )
        logger.info("%s() on %s confirmed (tx=%s block=%s)", label, address, tx_hash, receipt.block_number)
        return receipt

    def receipt_if_confirmed(self, tx_hash: str) -> Optional[TransactionReceipt]:
        """Receipt for ``tx_hash`` once it has the configured confirmations, else ``None``."""
        try:
            raw = self.web3.eth.get_transaction_receipt(tx_hash)
        except Exception:
            return None
        if not raw:
            return None
        receipt = TransactionReceipt.from_web3(tx_hash, raw)
        if self.confirmations <= 1 or receipt.block_number is None:
            return receipt
        target_block = receipt.block_number + self.confirmations - 1
        try:
            current_block = int(self.web3.eth.block_number)
        except Exception:
            return None
        if current_block >= target_block:
            return receipt
        return None

    def _fee_fields(self) -> dict[str, int]:
        gas_price = int(self.web3.eth.gas_price)
        try:
            priority_fee = int(self.web3.eth.max_priority_fee)
        except Exception:
            return {"gasPrice": gas_price * 2}
        return {
            "maxPriorityFeePerGas": priority_fee,
            "maxFeePerGas": max(gas_price, priority_fee) * 2,
        }

    def _wait_for_receipt(self, tx_hash: str) -> TransactionReceipt:
        start = time.time()
        try:
            raw = self.web3.eth.wait_for_transaction_receipt(tx_hash, timeout=self.receipt_timeout)
        except Exception as exc:
            logger.warning("Timed out waiting for tx receipt %s: %s", tx_hash, exc)
            cause = classify_exception(exc)
            if not cause.transient:
                cause = WriteFailure.TIMEOUT
            raise ChainWriteError(
                f"No receipt for {tx_hash}: {exc}", cause=cause, tx_hash=tx_hash
            ) from exc

        receipt = TransactionReceipt.from_web3(tx_hash, raw)
        if self.confirmations <= 1 or receipt.block_number is None:
            return receipt

        target_block = receipt.block_number + self.confirmations - 1
        while True:
            current_block = int(self.web3.eth.block_number)
            if current_block >= target_block:
                return receipt
            if time.time() - start > self.receipt_timeout:
                logger.warning(
                    "Timed out waiting for %s confirmations on tx %s (mined=%s current=%s)",
                    self.confirmations,
                    tx_hash,
                    receipt.block_number,
                    current_block,
                )
                raise ChainWriteError(
                    f"Confirmations not reached for {tx_hash}",
                    cause=WriteFailure.TIMEOUT,
                    tx_hash=tx_hash,
                )
            time.sleep(1)

    @staticmethod
    def _write_error(exc: Exception, label: str, address: str) -> ChainWriteError:
        cause = classify_exception(exc)
        return ChainWriteError(f"{label}() on {address} failed: {exc}", cause=cause)


class ScheduledPaymentContract:
    abi = SCHEDULED_PAYMENT_ABI

    def __init__(self, client: ChainClient, address: str) -> None:
        self.client = client
        self.address = Web3.to_checksum_address(address)
        self._contract = client.web3.eth.contract(address=self.address, abi=self.abi)

    def _read(self, name: str) -> Any:
        fn = getattr(self._contract.functions, name)()
        return self.client.call(fn, name, self.address)

    def is_released(self) -> bool:
        return bool(self._read("released"))

    def is_cancelled(self) -> bool:
        return bool(self._read("cancelled"))

    def release_time(self) -> int:
        return int(self._read("releaseTime"))

    def amounts(self) -> ContractAmounts:
        raw = self._read("getAmounts")
        try:
            payee, fee, total = (int(value) for value in raw)
        except (TypeError, ValueError) as exc:
            raise ChainReadError(f"getAmounts() returned malformed data on {self.address}", address=self.address) from exc
        return ContractAmounts(amount_to_payee=payee, protocol_fee=fee, total_locked=total)

    def release(self) -> Optional[TransactionReceipt]:
        fn = self._contract.functions.release()
        return self.client.transact(fn, "release", self.address)


class BatchPaymentContract(ScheduledPaymentContract):
    """Batch contracts share the scheduled interface; one ``release()`` pays every recipient."""


class InstantPaymentContract(ScheduledPaymentContract):
    """Instant payments settle inside their constructor; ``executed()`` is the released flag."""

    abi = INSTANT_PAYMENT_ABI

    def is_released(self) -> bool:
        return bool(self._read("executed"))

    def is_cancelled(self) -> bool:
        return False

    def release_time(self) -> int:
        return 0

    def amounts(self) -> ContractAmounts:
        raise ChainReadError("Instant payment contracts do not expose getAmounts()", address=self.address)

    def release(self) -> Optional[TransactionReceipt]:
        raise ChainWriteError(
            f"Instant payment {self.address} cannot be released after creation",
            cause=WriteFailure.NOT_SUPPORTED,
        )


class RecurringPaymentContract:
    abi = RECURRING_PAYMENT_ABI

    def __init__(self, client: ChainClient, address: str) -> None:
        self.client = client
        self.address = Web3.to_checksum_address(address)
        self._contract = client.web3.eth.contract(address=self.address, abi=self.abi)

    def _read(self, name: str) -> Any:
        fn = getattr(self._contract.functions, name)()
        return self.client.call(fn, name, self.address)

    def is_cancelled(self) -> bool:
        return bool(self._read("cancelled"))

    def months_paid(self) -> int:
        return int(self._read("monthsPaid"))

    def next_payment_time(self) -> int:
        return int(self._read("nextPaymentTime"))

    def can_execute(self) -> bool:
        return bool(self._read("canExecute"))

    def months_remaining(self) -> int:
        return int(self._read("getTotalMonthsRemaining"))

    def execute_installment(self) -> Optional[TransactionReceipt]:
        fn = self._contract.functions.executeMonthlyPayment()
        return self.client.transact(fn, "executeMonthlyPayment", self.address)


__all__ = [
    "BatchPaymentContract",
    "ChainClient",
    "InstantPaymentContract",
    "RecurringPaymentContract",
    "ScheduledPaymentContract",
    "TransactionReceipt",
]
