import asyncio

import pytest

from creatorstudio.models.credit import TransactionType
from creatorstudio.wallet import CreditLedger, InsufficientFundsError, InvalidAmountError


@pytest.fixture
def ledger(db_path):
    return CreditLedger(db_path)


@pytest.mark.anyio
async def test_balance_is_zero_for_unknown_owner(ledger):
    assert await ledger.balance("nobody") == 0.0
    assert await ledger.account("nobody") is None


@pytest.mark.anyio
async def test_purchase_then_deduction(ledger):
    assert await ledger.add("u1", 5.00, source="pack_small") == 5.00
    assert await ledger.deduct("u1", 0.04, related_job_id="job-1") == 4.96
    assert await ledger.balance("u1") == 4.96

    history = await ledger.history("u1")
    assert [tx.type for tx in history] == [TransactionType.DEDUCTION, TransactionType.PURCHASE]
    deduction = await ledger.deduction_for("job-1")
    assert deduction.delta == -0.04
    assert deduction.balance_after == 4.96


@pytest.mark.anyio
async def test_deduction_is_idempotent_per_job(ledger):
    await ledger.add("u1", 5.00, source="pack_small")

    first  = await ledger.deduct("u1", 0.04, related_job_id="job-1")
    second = await ledger.deduct("u1", 0.04, related_job_id="job-1")

    assert first == second == 4.96
    assert await ledger.balance("u1") == 4.96
    deductions = [tx for tx in await ledger.history("u1") if tx.type == TransactionType.DEDUCTION]
    assert len(deductions) == 1


@pytest.mark.anyio
async def test_concurrent_deductions_for_one_job_charge_once(ledger):
    await ledger.add("u1", 5.00, source="pack_small")

    results = await asyncio.gather(*[
        ledger.deduct("u1", 0.50, related_job_id="job-video") for _ in range(5)
    ])

    assert set(results) == {4.50}
    assert await ledger.balance("u1") == 4.50


@pytest.mark.anyio
async def test_check_funds_rejects_short_balance(ledger):
    await ledger.add("u1", 0.03, source="promo")

    with pytest.raises(InsufficientFundsError) as exc:
        await ledger.check_funds("u1", 0.04)

    assert exc.value.required == 0.04
    assert exc.value.balance == 0.03
    # Advisory only: nothing changed
    assert await ledger.balance("u1") == 0.03


@pytest.mark.anyio
async def test_check_funds_returns_balance(ledger):
    await ledger.add("u1", 1.00, source="promo")
    assert await ledger.check_funds("u1", 1.00) == 1.00


@pytest.mark.anyio
async def test_deduction_may_take_balance_negative(ledger):
    await ledger.add("u1", 0.04, source="promo")
    await ledger.deduct("u1", 0.04, related_job_id="job-1")
    assert await ledger.deduct("u1", 0.04, related_job_id="job-2") == -0.04


@pytest.mark.anyio
async def test_invalid_amounts(ledger):
    with pytest.raises(InvalidAmountError):
        await ledger.add("u1", 0, source="promo")
    with pytest.raises(InvalidAmountError):
        await ledger.add("u1", 1.0, source="promo", tx_type=TransactionType.DEDUCTION)
    with pytest.raises(InvalidAmountError):
        await ledger.deduct("u1", -1.0, related_job_id="job-1")
    with pytest.raises(InvalidAmountError):
        await ledger.deduct("u1", 1.0, related_job_id="")


@pytest.mark.anyio
async def test_rebuild_balance_matches_transaction_sum(ledger):
    await ledger.add("u1", 5.00, source="pack_small")
    await ledger.add("u1", 1.25, source="refund", tx_type=TransactionType.REFUND)
    await ledger.deduct("u1", 0.04, related_job_id="job-1")

    assert await ledger.rebuild_balance("u1") == 6.21
    assert await ledger.balance("u1") == 6.21
