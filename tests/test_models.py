import pytest
from pydantic import ValidationError

from keeper.models import (
    BatchPayment,
    ContractAmounts,
    InstantPayment,
    PaymentKind,
    PaymentStatus,
    RecurringStatus,
    SinglePayment,
    parse_recurring_row,
    parse_scheduled_row,
)

ADDRESS = "0x" + "ab" * 20


def _row(**overrides):
    row = {
        "id": 42,
        "contract_address": ADDRESS,
        "payer_address": "0x" + "11" * 20,
        "payee_address": "0x" + "22" * 20,
        "amount": "1000000",
        "release_time": 1_700_000_000,
        "status": "pending",
        "token_symbol": "USDC",
        "cancellable": None,
        "network": "base_mainnet",
    }
    row.update(overrides)
    return row


def test_parse_single_payment():
    payment = parse_scheduled_row(_row())
    assert isinstance(payment, SinglePayment)
    assert payment.kind is PaymentKind.SINGLE
    assert payment.id == "42"
    assert payment.amount == 1_000_000
    assert payment.payer == "0x" + "11" * 20
    assert payment.cancellable is False
    assert payment.is_erc20


def test_parse_batch_and_instant_variants():
    batch = parse_scheduled_row(_row(is_batch=True, batch_count="3"))
    assert isinstance(batch, BatchPayment)
    assert batch.batch_count == 3

    instant = parse_scheduled_row(_row(is_instant=True, token_symbol=None))
    assert isinstance(instant, InstantPayment)
    assert instant.token_symbol == "ETH"
    assert not instant.is_erc20


def test_numeric_strings_with_zero_fraction_are_accepted():
    payment = parse_scheduled_row(_row(release_time="1700000000.0", amount=5.0))
    assert payment.release_time == 1_700_000_000
    assert payment.amount == 5


def test_rejects_bad_rows():
    with pytest.raises(ValidationError):
        parse_scheduled_row(_row(contract_address="0x1234"))
    with pytest.raises(ValidationError):
        parse_scheduled_row(_row(amount="1.5"))
    with pytest.raises(ValidationError):
        parse_scheduled_row(_row(status="archived"))


def test_status_terminality():
    assert not PaymentStatus.PENDING.is_terminal
    assert PaymentStatus.EXECUTED.is_terminal
    assert not RecurringStatus.ACTIVE.is_terminal
    assert RecurringStatus.COMPLETED.is_terminal


def test_parse_recurring_row_defaults():
    payment = parse_recurring_row(
        {
            "id": "r-1",
            "contract_address": ADDRESS,
            "monthly_amount": "250",
            "total_months": 0,
            "executed_months": None,
            "start_date": "1700000000",
            "status": "active",
        },
        default_interval=60,
    )
    assert payment.first_payment_time == 1_700_000_000
    assert payment.interval_seconds == 60
    assert payment.executed_months == 0
    assert payment.total_months is None
    assert not payment.is_bounded
    assert payment.kind is PaymentKind.RECURRING


def test_contract_amounts_conservation():
    assert ContractAmounts(amount_to_payee=100_000, protocol_fee=1790, total_locked=101_790).is_conserved
    assert not ContractAmounts(amount_to_payee=100_000, protocol_fee=1790, total_locked=101_791).is_conserved
