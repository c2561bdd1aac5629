import asyncio

import pytest

from comms.database.models import Company, CompanyStatus, CreditConfig, CreditTransaction, CreditType
from comms.errors import InsufficientCredit, AccountSuspended, CompanyNotFound
from comms.services import ledger_service, stay_service
from sqlalchemy import select, func

from conftest import seed_company


async def _txn_count(session, company_id):
    result = await session.execute(
        select(func.count(CreditTransaction.id)).where(CreditTransaction.company_id == company_id)
    )
    return result.scalar()


@pytest.mark.asyncio
async def test_debit_updates_balance_and_log(async_session):
    company = await seed_company(async_session, balance=100)

    entry = await ledger_service.debit(
        async_session, company.id, 2, CreditType.sms_usage,
        reference_id=7, reference_type="message", idempotency_key="debit:message:7"
    )

    assert entry.new_balance == 98
    assert entry.replayed is False
    assert await ledger_service.get_balance(async_session, company.id) == 98
    assert await ledger_service.replay_balance(async_session, company.id) == 98

    latest = (await ledger_service.list_transactions(async_session, company.id))[0]
    assert latest.amount == -2
    assert latest.balance_after == 98
    assert latest.type == CreditType.sms_usage.value


@pytest.mark.asyncio
async def test_debit_idempotency_key_charges_once(async_session):
    company = await seed_company(async_session, balance=100)

    first = await ledger_service.debit(async_session, company.id, 2, CreditType.sms_usage, idempotency_key="k1")
    second = await ledger_service.debit(async_session, company.id, 2, CreditType.sms_usage, idempotency_key="k1")

    assert second.replayed is True
    assert second.transaction_id == first.transaction_id
    assert await ledger_service.get_balance(async_session, company.id) == 98
    assert await _txn_count(async_session, company.id) == 2  # purchase + one debit


@pytest.mark.asyncio
async def test_insufficient_credit_leaves_no_trace(async_session):
    company = await seed_company(async_session, balance=1)

    with pytest.raises(InsufficientCredit) as exc:
        await ledger_service.debit(async_session, company.id, 2, CreditType.sms_usage)

    assert exc.value.required == 2
    assert exc.value.available == 1
    assert await ledger_service.get_balance(async_session, company.id) == 1
    assert await _txn_count(async_session, company.id) == 1


@pytest.mark.asyncio
async def test_zero_balance_suspends_and_purchase_reactivates(async_session):
    company = await seed_company(async_session, balance=2)

    await ledger_service.debit(async_session, company.id, 2, CreditType.sms_usage)
    refreshed = await async_session.get(Company, company.id, populate_existing=True)
    assert refreshed.status == CompanyStatus.suspended.value

    with pytest.raises(AccountSuspended):
        await ledger_service.check_credits(async_session, company.id, 1)

    await ledger_service.credit(async_session, company.id, 10, CreditType.purchase)
    refreshed = await async_session.get(Company, company.id, populate_existing=True)
    assert refreshed.status == CompanyStatus.active.value
    assert refreshed.credit_balance == 10


@pytest.mark.asyncio
async def test_negative_balance_allowed_when_enabled(async_session):
    company = await stay_service.create_company(async_session, "Overdraft Co", allow_negative_balance=True)

    entry = await ledger_service.debit(async_session, company.id, 3, CreditType.email_usage)

    assert entry.new_balance == -3
    refreshed = await async_session.get(Company, company.id, populate_existing=True)
    assert refreshed.status == CompanyStatus.trial.value


@pytest.mark.asyncio
async def test_suspended_company_rejected_even_with_overdraft(async_session):
    company = await stay_service.create_company(
        async_session, "Overdraft Co", allow_negative_balance=True, status=CompanyStatus.suspended
    )

    with pytest.raises(AccountSuspended):
        await ledger_service.check_credits(async_session, company.id, 1)
    with pytest.raises(AccountSuspended):
        await ledger_service.debit(async_session, company.id, 1, CreditType.sms_usage)

    assert await ledger_service.get_balance(async_session, company.id) == 0
    assert await _txn_count(async_session, company.id) == 0


@pytest.mark.asyncio
async def test_concurrent_debits_never_overspend(async_session, session_factory):
    company = await seed_company(async_session, balance=10)

    async def spend():
        async with session_factory() as session:
            return await ledger_service.debit(session, company.id, 1, CreditType.sms_manual_usage)

    results = await asyncio.gather(*(spend() for _ in range(12)), return_exceptions=True)

    succeeded = [r for r in results if not isinstance(r, Exception)]
    rejected = [r for r in results if isinstance(r, Exception)]
    assert len(succeeded) == 10
    assert all(isinstance(r, (InsufficientCredit, AccountSuspended)) for r in rejected)
    assert sorted(r.new_balance for r in succeeded) == list(range(10))

    async with session_factory() as session:
        assert await ledger_service.get_balance(session, company.id) == 0
        assert await ledger_service.replay_balance(session, company.id) == 0


@pytest.mark.asyncio
async def test_credit_rejects_invalid_amounts(async_session):
    company = await seed_company(async_session, balance=0)

    with pytest.raises(ValueError):
        await ledger_service.credit(async_session, company.id, -5, CreditType.purchase)
    with pytest.raises(ValueError):
        await ledger_service.credit(async_session, company.id, 5, CreditType.sms_usage)
    with pytest.raises(ValueError):
        await ledger_service.debit(async_session, company.id, 0, CreditType.sms_usage)

    entry = await ledger_service.credit(async_session, company.id, -5, CreditType.adjustment, description="Correction")
    assert entry.new_balance == -5


@pytest.mark.asyncio
async def test_trial_credits_granted_once(async_session):
    company = await stay_service.create_company(async_session, "New Co")

    first = await ledger_service.grant_trial_credits(async_session, company.id)
    second = await ledger_service.grant_trial_credits(async_session, company.id)

    assert first.new_balance == 200
    assert second is None
    refreshed = await async_session.get(Company, company.id, populate_existing=True)
    assert refreshed.trial_credits_granted is True
    assert refreshed.credit_balance == 200


@pytest.mark.asyncio
async def test_credit_costs_from_config(async_session):
    defaults = await ledger_service.get_credit_costs(async_session)
    assert defaults.cost_for("sms", automated=True) == 2
    assert defaults.cost_for("sms", automated=False) == 1
    assert defaults.cost_for("email", automated=True) == 1

    async_session.add(CreditConfig(key="sms_ai_cost", value=3))
    await async_session.commit()

    costs = await ledger_service.get_credit_costs(async_session)
    assert costs.sms_ai == 3
    assert ledger_service.usage_type_for("email", automated=False) == CreditType.email_manual_usage


@pytest.mark.asyncio
async def test_usage_summary_and_unknown_company(async_session):
    company = await seed_company(async_session, balance=50)
    await ledger_service.debit(async_session, company.id, 2, CreditType.sms_usage)
    await ledger_service.debit(async_session, company.id, 1, CreditType.email_manual_usage)

    summary = await ledger_service.get_usage_summary(async_session, company.id)
    assert summary.balance == 47
    assert summary.total_used == 3
    assert summary.total_added == 50
    assert summary.by_type[CreditType.sms_usage.value] == -2

    with pytest.raises(CompanyNotFound):
        await ledger_service.debit(async_session, 9999, 1, CreditType.sms_usage)
