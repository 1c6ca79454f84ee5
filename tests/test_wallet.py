from decimal import Decimal

import pytest
from sqlalchemy import func, select

from errors import InsufficientBalance, InvalidRequest
from models import Transaction
from services.wallet import fee_reference


async def count_transactions(session_factory, user_id):
    async with session_factory() as session:
        result = await session.execute(select(func.count(Transaction.id)).where(Transaction.user_id == user_id))
        return result.scalar()


async def test_withdrawal_above_balance_changes_nothing(wallet, session_factory, user, fetch_user):
    with pytest.raises(InsufficientBalance):
        await wallet.withdraw(user.id, "5.01", "flutterwave")

    assert (await fetch_user(user.id)).wallet_balance == Decimal("5.00")
    assert await count_transactions(session_factory, user.id) == 0


async def test_withdrawal_creates_pending_debit(wallet, session_factory, user, fetch_user):
    result = await wallet.withdraw(user.id, "3.50", "bank_transfer", {"account_number": "0123456789"})

    assert result["new_balance"] == "1.50"
    assert result["status"] == "pending"
    assert result["payment_reference"].startswith("withdraw_")
    assert (await fetch_user(user.id)).wallet_balance == Decimal("1.50")

    async with session_factory() as session:
        tx = (await session.execute(select(Transaction))).scalar_one()
    assert tx.type == "debit"
    assert tx.amount == Decimal("3.50")
    assert tx.extra_data["account_details"] == {"account_number": "0123456789"}


@pytest.mark.parametrize("amount, method", [("0", "flutterwave"), ("-2", "momo"), ("abc", "momo"), ("1.00", "cash")])
async def test_withdrawal_validation(wallet, user, amount, method):
    with pytest.raises(InvalidRequest):
        await wallet.withdraw(user.id, amount, method)


async def test_entry_fee_is_charged_once_per_session(wallet, session_factory, user, fetch_user):
    first = await wallet.charge_entry_fee(user.id, "session-1")
    second = await wallet.charge_entry_fee(user.id, "session-1")

    assert first.id == second.id
    assert first.payment_reference == fee_reference("session-1") == "quiz_fee_session-1"
    assert (await fetch_user(user.id)).wallet_balance == Decimal("4.00")
    assert await count_transactions(session_factory, user.id) == 1


async def test_entry_fee_requires_balance(wallet, make_user, session_factory, fetch_user):
    broke = await make_user("0.50")

    with pytest.raises(InsufficientBalance):
        await wallet.charge_entry_fee(broke.id, "session-2")

    assert (await fetch_user(broke.id)).wallet_balance == Decimal("0.50")
    assert await count_transactions(session_factory, broke.id) == 0


async def test_wallet_summary_and_history(wallet, user, add_transaction, clock):
    await add_transaction(user.id, "FLW-deposit")
    clock.advance(minutes=1)
    await add_transaction(user.id, "REWARD_abc", amount="15.25", payment_method="system")
    clock.advance(minutes=1)
    await wallet.charge_entry_fee(user.id, "session-3")

    summary = await wallet.get_wallet(user.id)
    assert summary["balance"] == "4.00"
    assert summary["currency"] == "USD"
    assert summary["total_rewards"] == "15.25"
    assert len(summary["recent_transactions"]) == 3

    credits = await wallet.list_transactions(user.id, type="credit")
    assert credits["pagination"]["total"] == 2
    assert {t["payment_reference"] for t in credits["transactions"]} == {"FLW-deposit", "REWARD_abc"}

    page = await wallet.list_transactions(user.id, page=2, limit=2)
    assert page["pagination"] == {"page": 2, "limit": 2, "total": 3, "pages": 2}
    assert len(page["transactions"]) == 1

    with pytest.raises(InvalidRequest):
        await wallet.list_transactions(user.id, status="refunded")
