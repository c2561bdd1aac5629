"""
Credit ledger.

Every balance change is a CreditTransaction row written in the same commit
as the Company.credit_balance update, serialized per company. The cached
balance is therefore always equal to the sum of the company's transactions
(see replay_balance).
"""
import logging
from dataclasses import dataclass
from typing import Optional, List, Dict, NamedTuple

from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from comms.config import config
from comms.database.models import (
    Company, CompanyStatus, CreditTransaction, CreditType, CreditConfig,
    Channel, Message
)
from comms.errors import LedgerError, InsufficientCredit, AccountSuspended, CompanyNotFound
from comms.utils.locks import company_locks
from comms.services.thread_service import company_id_for_thread


@dataclass(frozen=True)
class CreditCosts:
    """Per-action credit prices, loaded once per request/tick"""
    sms_ai: int = 2
    sms_manual: int = 1
    email_ai: int = 1
    email_manual: int = 1
    trial_credits: int = 200

    def cost_for(self, channel: Channel, automated: bool) -> int:
        if Channel(channel) == Channel.sms:
            return self.sms_ai if automated else self.sms_manual
        return self.email_ai if automated else self.email_manual


CREDIT_CONFIG_KEYS = {
    "sms_ai_cost": "sms_ai",
    "sms_manual_cost": "sms_manual",
    "email_ai_cost": "email_ai",
    "email_manual_cost": "email_manual",
    "trial_credits": "trial_credits",
}

CREDIT_TYPES = [
    CreditType.purchase, CreditType.refund, CreditType.trial_grant, CreditType.adjustment,
]


class LedgerEntry(NamedTuple):
    new_balance: int
    transaction_id: int
    replayed: bool = False  # True when an idempotency key matched an existing row


class UsageSummary(NamedTuple):
    company_id: int
    balance: int
    total_used: int
    total_added: int
    by_type: Dict[str, int]


def usage_type_for(channel: Channel, automated: bool) -> CreditType:
    if Channel(channel) == Channel.sms:
        return CreditType.sms_usage if automated else CreditType.sms_manual_usage
    return CreditType.email_usage if automated else CreditType.email_manual_usage


async def get_credit_costs(session: AsyncSession) -> CreditCosts:
    result = await session.execute(select(CreditConfig))
    overrides = {}
    for row in result.scalars().all():
        field = CREDIT_CONFIG_KEYS.get(row.key)
        if field is not None:
            overrides[field] = int(row.value)
    return CreditCosts(**overrides)


async def _lock_company(session: AsyncSession, company_id: int) -> Company:
    stmt = (
        select(Company)
        .where(Company.id == company_id)
        .with_for_update()  # Row-level lock
        .execution_options(populate_existing=True)
    )
    result = await session.execute(stmt)
    company = result.scalar_one_or_none()
    if not company:
        raise CompanyNotFound(company_id)
    return company


async def _find_by_key(session: AsyncSession, company_id: int, key: str) -> Optional[CreditTransaction]:
    stmt = select(CreditTransaction).where(
        CreditTransaction.company_id == company_id,
        CreditTransaction.idempotency_key == key
    )
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


def _ensure_can_spend(company: Company, amount: int):
    if company.status == CompanyStatus.suspended.value:
        raise AccountSuspended(company.id)
    if not company.allow_negative_balance and company.credit_balance < amount:
        raise InsufficientCredit(company.id, amount, company.credit_balance)


async def check_credits(session: AsyncSession, company_id: int, amount: int) -> int:
    """
    Pre-flight check before a billable send. Does not mutate anything.

    Returns the current balance, raises InsufficientCredit / AccountSuspended.
    """
    company = await session.get(Company, company_id, populate_existing=True)
    if not company:
        raise CompanyNotFound(company_id)
    _ensure_can_spend(company, amount)
    return company.credit_balance


async def debit(
    session: AsyncSession,
    company_id: int,
    amount: int,
    txn_type: CreditType,
    reference_id: Optional[int] = None,
    reference_type: Optional[str] = None,
    description: Optional[str] = None,
    message: Optional[Message] = None,
    idempotency_key: Optional[str] = None,
    created_by: Optional[int] = None,
) -> LedgerEntry:
    """
    Atomically take `amount` credits from a company.

    Balance check, balance update and the transaction row are one commit made
    while holding the company lock. When `message` is given its
    credits_deducted is set in that same commit.
    """
    if amount <= 0:
        raise ValueError(f"Debit amount must be positive, got {amount}")

    async with company_locks.hold(company_id):
        company = await _lock_company(session, company_id)

        # IDEMPOTENCY CHECK: same key already charged
        if idempotency_key:
            existing = await _find_by_key(session, company_id, idempotency_key)
            if existing:
                logging.info(f"Debit {idempotency_key} already recorded as txn {existing.id}")
                entry = LedgerEntry(company.credit_balance, existing.id, replayed=True)
                await session.commit()  # release row lock
                return entry

        try:
            _ensure_can_spend(company, amount)
        except LedgerError as e:
            # Nothing was mutated, committing only ends the locking transaction
            await session.commit()
            logging.warning(f"Debit rejected: {e}")
            raise

        new_balance = company.credit_balance - amount
        company.credit_balance = new_balance

        txn = CreditTransaction(
            company_id=company_id,
            amount=-amount,
            type=CreditType(txn_type).value,
            reference_type=reference_type,
            reference_id=reference_id,
            description=description,
            balance_after=new_balance,
            idempotency_key=idempotency_key,
            created_by=created_by,
        )
        session.add(txn)

        if message is not None:
            message.credits_deducted = amount

        if (
            config.SUSPEND_ON_ZERO_BALANCE
            and new_balance <= 0
            and not company.allow_negative_balance
        ):
            company.status = CompanyStatus.suspended.value
            logging.warning(f"Company {company_id} suspended: balance reached {new_balance}")

        await session.flush()
        txn_id = txn.id
        await session.commit()

    logging.info(f"Debited {amount} credits from company {company_id} ({txn_type}), balance {new_balance}")
    if 0 < new_balance < config.LOW_BALANCE_THRESHOLD:
        logging.warning(f"Low credit balance for company {company_id}: {new_balance}")

    return LedgerEntry(new_balance, txn_id)


async def credit(
    session: AsyncSession,
    company_id: int,
    amount: int,
    txn_type: CreditType,
    reference_id: Optional[int] = None,
    reference_type: Optional[str] = None,
    description: Optional[str] = None,
    idempotency_key: Optional[str] = None,
    created_by: Optional[int] = None,
) -> LedgerEntry:
    """
    Add credits (purchase, refund, trial grant) or apply a manual adjustment.

    Only adjustments may be negative. A suspended company whose balance
    becomes positive is reactivated.
    """
    txn_type = CreditType(txn_type)
    if txn_type not in CREDIT_TYPES:
        raise ValueError(f"{txn_type.value} is not a crediting transaction type")
    if amount == 0 or (amount < 0 and txn_type != CreditType.adjustment):
        raise ValueError(f"Invalid credit amount {amount} for {txn_type.value}")

    async with company_locks.hold(company_id):
        company = await _lock_company(session, company_id)

        if idempotency_key:
            existing = await _find_by_key(session, company_id, idempotency_key)
            if existing:
                logging.info(f"Credit {idempotency_key} already recorded as txn {existing.id}")
                entry = LedgerEntry(company.credit_balance, existing.id, replayed=True)
                await session.commit()  # release row lock
                return entry

        new_balance = company.credit_balance + amount
        company.credit_balance = new_balance

        txn = CreditTransaction(
            company_id=company_id,
            amount=amount,
            type=txn_type.value,
            reference_type=reference_type,
            reference_id=reference_id,
            description=description,
            balance_after=new_balance,
            idempotency_key=idempotency_key,
            created_by=created_by,
        )
        session.add(txn)

        if company.status == CompanyStatus.suspended.value and new_balance > 0:
            company.status = CompanyStatus.active.value
            logging.info(f"Company {company_id} reactivated, balance {new_balance}")

        await session.flush()
        txn_id = txn.id
        await session.commit()

    logging.info(f"Credited {amount} to company {company_id} ({txn_type.value}), balance {new_balance}")
    return LedgerEntry(new_balance, txn_id)


async def grant_trial_credits(
    session: AsyncSession,
    company_id: int,
    costs: Optional[CreditCosts] = None
) -> Optional[LedgerEntry]:
    """Grant the one-off trial allowance. Returns None if already granted."""
    if costs is None:
        costs = await get_credit_costs(session)

    entry = await credit(
        session, company_id, costs.trial_credits, CreditType.trial_grant,
        description="Trial credits",
        idempotency_key="trial_grant",
    )
    if entry.replayed:
        return None

    company = await session.get(Company, company_id)
    company.trial_credits_granted = True
    await session.commit()
    return entry


async def refund_message(session: AsyncSession, message: Message, reason: str = "delivery failed") -> Optional[LedgerEntry]:
    """Return the credits charged for a message. At most once per message."""
    if not message.credits_deducted:
        return None

    company_id = await company_id_for_thread(session, message.thread_id)

    entry = await credit(
        session, company_id, message.credits_deducted, CreditType.refund,
        reference_id=message.id,
        reference_type="message",
        description=f"Refund: {reason}",
        idempotency_key=f"refund:message:{message.id}",
    )
    return None if entry.replayed else entry


async def get_balance(session: AsyncSession, company_id: int) -> int:
    result = await session.execute(select(Company.credit_balance).where(Company.id == company_id))
    balance = result.scalar_one_or_none()
    if balance is None:
        raise CompanyNotFound(company_id)
    return balance


async def replay_balance(session: AsyncSession, company_id: int) -> int:
    """Balance recomputed from the transaction log"""
    stmt = select(func.coalesce(func.sum(CreditTransaction.amount), 0)).where(
        CreditTransaction.company_id == company_id
    )
    result = await session.execute(stmt)
    return int(result.scalar())


async def list_transactions(session: AsyncSession, company_id: int, limit: int = 50) -> List[CreditTransaction]:
    stmt = (
        select(CreditTransaction)
        .where(CreditTransaction.company_id == company_id)
        .order_by(CreditTransaction.id.desc())
        .limit(limit)
    )
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def get_usage_summary(session: AsyncSession, company_id: int) -> UsageSummary:
    balance = await get_balance(session, company_id)

    stmt = (
        select(CreditTransaction.type, func.sum(CreditTransaction.amount))
        .where(CreditTransaction.company_id == company_id)
        .group_by(CreditTransaction.type)
    )
    result = await session.execute(stmt)

    by_type = {}
    total_used = 0
    total_added = 0
    for txn_type, total in result.all():
        total = int(total or 0)
        by_type[txn_type] = total
        if total < 0:
            total_used += -total
        else:
            total_added += total

    return UsageSummary(company_id, balance, total_used, total_added, by_type)
