from typing import Any, Dict, Optional

import pytest
from web3.exceptions import ContractLogicError, TimeExhausted

from keeper.chain import (
    BatchPaymentContract,
    ChainClient,
    InstantPaymentContract,
    ScheduledPaymentContract,
)
from keeper.errors import ChainReadError, ChainWriteError, WriteFailure
from keeper.models import parse_scheduled_row

ADDRESS = "0x" + "ab" * 20
TX_BYTES = b"\x12" * 32
TX_HASH = "0x" + "12" * 32


class FakeFunction:
    def __init__(self, result: Any = None, *, raise_on_call=None, gas: int = 50_000, raise_on_estimate=None):
        self.result = result
        self.raise_on_call = raise_on_call
        self.gas = gas
        self.raise_on_estimate = raise_on_estimate
        self.built: Optional[Dict[str, Any]] = None

    def call(self):
        if self.raise_on_call:
            raise self.raise_on_call
        return self.result

    def estimate_gas(self, params):
        if self.raise_on_estimate:
            raise self.raise_on_estimate
        return self.gas

    def build_transaction(self, params):
        self.built = dict(params)
        return dict(params, data="0x")


class FakeFunctions:
    def __init__(self, functions: Dict[str, FakeFunction]):
        self._functions = functions

    def __getattr__(self, name):
        fn = self._functions[name]
        return lambda: fn


class FakeContract:
    def __init__(self, functions: Dict[str, FakeFunction]):
        self.functions = FakeFunctions(functions)


class FakeReceipt:
    def __init__(self, *, status: int = 1, block_number: int = 10):
        self.status = status
        self.blockNumber = block_number
        self.gasUsed = 42_000


class FakeEth:
    def __init__(self, functions=None, receipt=None, *, raise_on_wait=None, priority_fee: Optional[int] = 2):
        self.functions = functions or {}
        self.receipt = receipt or FakeReceipt()
        self.raise_on_wait = raise_on_wait
        self.priority_fee = priority_fee
        self.block_number = self.receipt.blockNumber
        self.gas_price = 10
        self.sent = []
        self.receipt_for_get = None
        self.abis = []

    def contract(self, address, abi):
        self.abis.append(abi)
        return FakeContract(self.functions)

    def get_transaction_count(self, address, block):
        return 7

    @property
    def max_priority_fee(self):
        if self.priority_fee is None:
            raise ValueError("method not found")
        return self.priority_fee

    def send_raw_transaction(self, raw):
        self.sent.append(raw)
        return TX_BYTES

    def wait_for_transaction_receipt(self, tx_hash, timeout=120):
        if self.raise_on_wait:
            raise self.raise_on_wait
        return self.receipt

    def get_transaction_receipt(self, tx_hash):
        return self.receipt_for_get

    def get_balance(self, address):
        return 123


class FakeWeb3:
    def __init__(self, eth: FakeEth):
        self.eth = eth


class FakeSigner:
    address = "0x" + "99" * 20

    def __init__(self):
        self.signed = []

    def sign_transaction(self, tx):
        self.signed.append(tx)
        return b"\x01"


def make_client(eth: FakeEth, *, dry_run: bool = False, confirmations: int = 1, signer=None) -> ChainClient:
    return ChainClient(
        "http://localhost:8545",
        8453,
        signer=signer if signer is not None else FakeSigner(),
        dry_run=dry_run,
        confirmations=confirmations,
        receipt_timeout=1,
        web3=FakeWeb3(eth),
    )


def test_reads_contract_state():
    eth = FakeEth(
        {
            "released": FakeFunction(False),
            "cancelled": FakeFunction(True),
            "releaseTime": FakeFunction(1_700_000_000),
            "getAmounts": FakeFunction([100_000, 1790, 101_790]),
        }
    )
    contract = ScheduledPaymentContract(make_client(eth), ADDRESS)
    assert contract.is_released() is False
    assert contract.is_cancelled() is True
    assert contract.release_time() == 1_700_000_000
    amounts = contract.amounts()
    assert amounts.protocol_fee == 1790
    assert amounts.is_conserved


def test_read_failure_raises_chain_read_error():
    eth = FakeEth({"released": FakeFunction(raise_on_call=ConnectionError("down"))})
    contract = ScheduledPaymentContract(make_client(eth), ADDRESS)
    with pytest.raises(ChainReadError):
        contract.is_released()


def test_release_submits_signed_transaction():
    release = FakeFunction(gas=100_000)
    eth = FakeEth({"release": release})
    signer = FakeSigner()
    contract = ScheduledPaymentContract(make_client(eth, signer=signer), ADDRESS)

    receipt = contract.release()

    assert receipt.tx_hash == TX_HASH
    assert receipt.block_number == 10
    assert receipt.status == 1
    assert eth.sent == [b"\x01"]
    assert release.built["gas"] == 120_000
    assert release.built["nonce"] == 7
    assert release.built["chainId"] == 8453
    assert release.built["maxPriorityFeePerGas"] == 2
    assert release.built["maxFeePerGas"] == 20
    assert signer.signed


def test_legacy_gas_price_when_priority_fee_unavailable():
    release = FakeFunction()
    eth = FakeEth({"release": release}, priority_fee=None)
    ScheduledPaymentContract(make_client(eth), ADDRESS).release()
    assert release.built["gasPrice"] == 20
    assert "maxFeePerGas" not in release.built


def test_batch_contract_releases_through_release():
    release = FakeFunction()
    eth = FakeEth({"release": release})
    receipt = BatchPaymentContract(make_client(eth), ADDRESS).release()
    assert receipt.tx_hash == TX_HASH
    assert release.built is not None
    names = [entry["name"] for entry in eth.abis[-1]]
    assert "release" in names
    assert "releaseBatch" not in names


def test_dry_run_does_not_submit():
    eth = FakeEth({"release": FakeFunction()})
    contract = ScheduledPaymentContract(make_client(eth, dry_run=True), ADDRESS)
    assert contract.release() is None
    assert eth.sent == []


def test_reverted_receipt_is_terminal():
    eth = FakeEth({"release": FakeFunction()}, FakeReceipt(status=0))
    contract = ScheduledPaymentContract(make_client(eth), ADDRESS)
    with pytest.raises(ChainWriteError) as excinfo:
        contract.release()
    assert excinfo.value.cause is WriteFailure.REVERTED
    assert excinfo.value.tx_hash == TX_HASH
    assert not excinfo.value.transient


def test_receipt_timeout_keeps_tx_hash():
    eth = FakeEth({"release": FakeFunction()}, raise_on_wait=TimeExhausted("slow"))
    contract = ScheduledPaymentContract(make_client(eth), ADDRESS)
    with pytest.raises(ChainWriteError) as excinfo:
        contract.release()
    assert excinfo.value.cause is WriteFailure.TIMEOUT
    assert excinfo.value.tx_hash == TX_HASH
    assert excinfo.value.transient


def test_gas_estimation_revert_is_terminal():
    release = FakeFunction(raise_on_estimate=ContractLogicError("execution reverted: Not yet"))
    eth = FakeEth({"release": release})
    contract = ScheduledPaymentContract(make_client(eth), ADDRESS)
    with pytest.raises(ChainWriteError) as excinfo:
        contract.release()
    assert excinfo.value.cause is WriteFailure.GAS_ESTIMATION
    assert eth.sent == []


def test_instant_contract_reads_executed_and_refuses_release():
    eth = FakeEth({"executed": FakeFunction(True)})
    client = make_client(eth)
    payment = parse_scheduled_row(
        {"id": "i-1", "contract_address": ADDRESS, "release_time": 0, "is_instant": True}
    )
    contract = client.payment_contract(payment)
    assert isinstance(contract, InstantPaymentContract)
    assert contract.is_released() is True
    assert contract.is_cancelled() is False
    with pytest.raises(ChainWriteError) as excinfo:
        contract.release()
    assert excinfo.value.cause is WriteFailure.NOT_SUPPORTED


def test_receipt_if_confirmed_waits_for_depth():
    eth = FakeEth()
    eth.receipt_for_get = FakeReceipt(block_number=10)
    client = make_client(eth, confirmations=3)

    eth.block_number = 11
    assert client.receipt_if_confirmed(TX_HASH) is None

    eth.block_number = 12
    receipt = client.receipt_if_confirmed(TX_HASH)
    assert receipt is not None
    assert receipt.tx_hash == TX_HASH


def test_operator_balance():
    client = make_client(FakeEth())
    assert client.operator_balance() == 123


def test_operator_balance_without_key():
    client = ChainClient("http://localhost:8545", 8453, web3=FakeWeb3(FakeEth()))
    assert client.operator_address is None
    with pytest.raises(ChainReadError):
        client.operator_balance()
