# ==================================================================
# services/wallet.py
# Wallet balance + ledger operations (entry fees, withdrawals, history)
# ==================================================================
import logging
import uuid
from decimal import Decimal

from sqlalchemy import select, func
from sqlalchemy.exc import IntegrityError

from errors import InsufficientBalance, InvalidRequest, SessionNotFound
from helpers import get_user_by_id, to_money, mask_sensitive
from models import Transaction
from utils.metadata import clean_metadata

logger = logging.getLogger(__name__)

WITHDRAWAL_METHODS = ("flutterwave", "momo", "bank_transfer")
TRANSACTION_TYPES = ("debit", "credit")
TRANSACTION_STATUSES = ("pending", "completed", "failed")


def fee_reference(session_id) -> str:
    return f"quiz_fee_{session_id}"


def withdrawal_reference() -> str:
    return f"withdraw_{uuid.uuid4().hex}"


class WalletService:
    def __init__(self, session_factory, currency: str = "USD", entry_fee: Decimal = Decimal("1.00")):
        self.session_factory = session_factory
        self.currency = currency
        self.entry_fee = to_money(entry_fee)

    async def _find_by_reference(self, session, reference: str) -> Transaction | None:
        result = await session.execute(select(Transaction).where(Transaction.payment_reference == reference))
        return result.scalar_one_or_none()

    # ===============================================================
    # Debit helper: re-reads the balance under a row lock
    # ===============================================================
    async def _debit(self, session, user_id, amount: Decimal, **tx_fields):
        user = await get_user_by_id(session, user_id, for_update=True)
        if user is None:
            raise InvalidRequest("User not found")

        balance = user.wallet_balance or Decimal("0")
        if balance < amount:
            logger.warning(
                f"🚫 Insufficient balance for user {mask_sensitive(str(user_id))}: "
                f"balance={balance}, requested={amount}"
            )
            raise InsufficientBalance()

        user.wallet_balance = to_money(balance - amount)
        tx = Transaction(
            user_id=user.id,
            amount=amount,
            currency=self.currency,
            type="debit",
            **tx_fields,
        )
        session.add(tx)
        await session.flush()
        return user, tx

    # ===============================================================
    # Entry fee (caller-coordinated step after a session starts)
    # ===============================================================
    async def charge_entry_fee(self, user_id, session_id, amount: Decimal | None = None) -> Transaction:
        """
        Debit the quiz entry fee once per session.

        The `quiz_fee_<session_id>` reference is the idempotency key: a retry
        returns the existing debit instead of charging again.
        """
        amount = to_money(self.entry_fee if amount is None else amount)
        reference = fee_reference(session_id)

        async with self.session_factory() as session:
            try:
                async with session.begin():
                    existing = await self._find_by_reference(session, reference)
                    if existing is not None:
                        if existing.user_id != user_id:
                            raise SessionNotFound()
                        logger.info(f"ℹ️ Entry fee {reference} already charged; skipping.")
                        return existing

                    _, tx = await self._debit(
                        session,
                        user_id,
                        amount,
                        status="completed",
                        payment_method="wallet",
                        payment_reference=reference,
                        description="Quiz entry fee",
                        extra_data={"session_id": str(session_id)},
                    )
            except IntegrityError:
                # A concurrent retry inserted the same reference first
                await session.rollback()
                existing = await self._find_by_reference(session, reference)
                if existing is None:
                    raise
                return existing

        logger.info(f"🎟️ Charged entry fee {amount} {self.currency} for session {session_id}")
        return tx

    # ===============================================================
    # Withdrawal (pending debit, settled by the payout collaborator)
    # ===============================================================
    async def withdraw(self, user_id, amount, payment_method: str, account_details: dict | None = None) -> dict:
        try:
            amount = to_money(amount)
        except (ArithmeticError, ValueError, TypeError) as e:
            raise InvalidRequest("Invalid withdrawal amount") from e
        if amount <= 0:
            raise InvalidRequest("Invalid withdrawal amount")
        if payment_method not in WITHDRAWAL_METHODS:
            raise InvalidRequest("Invalid withdrawal method")

        metadata = clean_metadata({"withdrawal_request": True, "account_details": account_details or {}})

        async with self.session_factory() as session:
            async with session.begin():
                user, tx = await self._debit(
                    session,
                    user_id,
                    amount,
                    status="pending",
                    payment_method=payment_method,
                    payment_reference=withdrawal_reference(),
                    description=f"Withdrawal to {payment_method}",
                    extra_data=metadata,
                )
                new_balance = user.wallet_balance

        logger.info(
            f"🏧 Withdrawal {mask_sensitive(tx.payment_reference)} of {amount} {self.currency} "
            f"requested by user {mask_sensitive(str(user_id))}"
        )
        return {
            "transaction_id": str(tx.id),
            "payment_reference": tx.payment_reference,
            "amount": str(amount),
            "new_balance": str(new_balance),
            "status": tx.status,
        }

    # ===============================================================
    # Read-only views
    # ===============================================================
    async def get_wallet(self, user_id, recent: int = 5) -> dict:
        async with self.session_factory() as session:
            user = await get_user_by_id(session, user_id)
            if user is None:
                raise InvalidRequest("User not found")

            result = await session.execute(
                select(Transaction)
                .where(Transaction.user_id == user_id)
                .order_by(Transaction.created_at.desc())
                .limit(recent)
            )
            transactions = result.scalars().all()

            rewards = await session.execute(
                select(func.coalesce(func.sum(Transaction.amount), 0)).where(
                    Transaction.user_id == user_id,
                    Transaction.payment_reference.startswith("REWARD_", autoescape=True),
                    Transaction.status == "completed",
                )
            )
            total_rewards = to_money(rewards.scalar() or 0)

        return {
            "balance": str(to_money(user.wallet_balance or 0)),
            "currency": self.currency,
            "total_rewards": str(total_rewards),
            "recent_transactions": [tx.to_dict() for tx in transactions],
        }

    async def list_transactions(
        self,
        user_id,
        page: int = 1,
        limit: int = 20,
        type: str | None = None,
        status: str | None = None,
    ) -> dict:
        if type is not None and type not in TRANSACTION_TYPES:
            raise InvalidRequest(f"Unknown transaction type: {type}")
        if status is not None and status not in TRANSACTION_STATUSES:
            raise InvalidRequest(f"Unknown transaction status: {status}")

        page = max(1, int(page))
        limit = min(max(1, int(limit)), 100)

        filters = [Transaction.user_id == user_id]
        if type:
            filters.append(Transaction.type == type)
        if status:
            filters.append(Transaction.status == status)

        async with self.session_factory() as session:
            total = (await session.execute(select(func.count(Transaction.id)).where(*filters))).scalar() or 0
            result = await session.execute(
                select(Transaction)
                .where(*filters)
                .order_by(Transaction.created_at.desc())
                .offset((page - 1) * limit)
                .limit(limit)
            )
            rows = result.scalars().all()

        return {
            "transactions": [tx.to_dict() for tx in rows],
            "pagination": {
                "page": page,
                "limit": limit,
                "total": total,
                "pages": (total + limit - 1) // limit,
            },
        }
