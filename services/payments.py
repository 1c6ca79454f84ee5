# ================================================================
# services/payments.py
# Payment collaborator (Flutterwave) + atomic verification update
# ================================================================
import hmac
import json
import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import timedelta
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Optional

import httpx
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from errors import (
    InvalidRequest,
    InvalidSignature,
    PaymentGatewayError,
    TransactionNotFound,
)
from helpers import get_user_by_id, to_money, mask_sensitive
from models import Transaction, TransactionLog
from utils.clock import utcnow
from utils.metadata import merge_metadata, clean_metadata

logger = logging.getLogger(__name__)


@dataclass
class PaymentIntent:
    user_id: str
    amount: Decimal
    currency: str
    payment_method: str
    email: Optional[str] = None
    name: Optional[str] = None
    description: str = "Wallet deposit"


@dataclass
class PaymentInit:
    reference: str
    payment_url: Optional[str] = None
    gateway_data: Dict[str, Any] = field(default_factory=dict)


@dataclass
class PaymentVerification:
    # "successful" | "failed" | "pending" | "error"
    status: str
    data: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.status == "successful"


class PaymentGateway:
    """Narrow interface every payment provider adapter implements."""

    name = "gateway"

    async def initialize_payment(self, intent: PaymentIntent) -> PaymentInit:
        raise NotImplementedError

    async def verify_payment(self, reference: str, method: str) -> PaymentVerification:
        raise NotImplementedError

    def validate_webhook(self, headers) -> bool:
        return False

    async def aclose(self) -> None:
        return None


# ------------------------------------------------------
# Flutterwave adapter
# ------------------------------------------------------
class FlutterwaveGateway(PaymentGateway):
    name = "flutterwave"

    def __init__(
        self,
        secret_key: str,
        secret_hash: str | None = None,
        base_url: str = "https://api.flutterwave.com/v3",
        redirect_url: str | None = None,
        timeout: float = 20.0,
        client: httpx.AsyncClient | None = None,
    ):
        self.secret_key = secret_key
        self.secret_hash = secret_hash
        self.base_url = base_url.rstrip("/")
        self.redirect_url = redirect_url
        self.client = client or httpx.AsyncClient(timeout=timeout)

    @property
    def headers(self) -> dict:
        return {
            "Authorization": f"Bearer {self.secret_key}",
            "Content-Type": "application/json",
        }

    @staticmethod
    def new_reference() -> str:
        return f"FLW{int(time.time() * 1000)}{uuid.uuid4().hex[:9]}"

    async def initialize_payment(self, intent: PaymentIntent) -> PaymentInit:
        reference = self.new_reference()
        payload = {
            "tx_ref": reference,
            "amount": str(intent.amount),
            "currency": intent.currency,
            "redirect_url": self.redirect_url,
            "customer": {
                "email": intent.email or f"user{intent.user_id}@quizgate.app",
                "name": intent.name or f"User {intent.user_id}",
            },
            "customizations": {"title": "QuizGate", "description": intent.description},
            "meta": {"user_id": str(intent.user_id)},
        }

        try:
            response = await self.client.post(f"{self.base_url}/payments", json=payload, headers=self.headers)
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPStatusError as e:
            logger.error(f"🚫 Flutterwave checkout failed [{e.response.status_code}]: {e.response.text}")
            raise PaymentGatewayError() from e
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"🚫 Flutterwave checkout request error for {mask_sensitive(reference)}: {e}")
            raise PaymentGatewayError() from e

        link = (data.get("data") or {}).get("link") if data.get("status") == "success" else None
        if not link:
            logger.error(f"🚫 Invalid Flutterwave response structure: {data}")
            raise PaymentGatewayError("Payment gateway returned no checkout link")

        logger.info(f"✅ Checkout created for user {mask_sensitive(str(intent.user_id))} ({intent.amount} {intent.currency}) TX: {mask_sensitive(reference)}")
        return PaymentInit(reference=reference, payment_url=link, gateway_data={"link": link})

    async def verify_payment(self, reference: str, method: str = "flutterwave") -> PaymentVerification:
        try:
            response = await self.client.get(
                f"{self.base_url}/transactions/verify_by_reference",
                params={"tx_ref": reference},
                headers=self.headers,
            )
            response.raise_for_status()
            data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"❌ Verification failed for {mask_sensitive(reference)}: {e}")
            return PaymentVerification(status="error", error=str(e))

        tx = data.get("data") or {}
        if data.get("status") != "success" or not tx:
            logger.warning(f"⚠️ Invalid verification response for {mask_sensitive(reference)}")
            return PaymentVerification(status="error", error="No transaction data in Flutterwave response")

        tx_status = (tx.get("status") or "").lower()
        if tx_status == "successful":
            status = "successful"
        elif tx_status in ("failed", "cancelled", "expired"):
            status = "failed"
        else:
            status = "pending"

        logger.info(f"🔎 Flutterwave reports {tx_status or 'unknown'} for {mask_sensitive(reference)}")
        return PaymentVerification(
            status=status,
            data=tx,
            error=None if status == "successful" else (tx.get("processor_response") or f"Payment {tx_status or 'pending'}"),
        )

    def validate_webhook(self, headers) -> bool:
        """Compare Flutterwave verif-hash using constant-time comparison."""
        signature = headers.get("verif-hash") or headers.get("verif_hash") or ""
        if not signature or not self.secret_hash:
            return False
        return hmac.compare_digest(signature.strip(), self.secret_hash.strip())

    async def aclose(self) -> None:
        await self.client.aclose()


def verification_metadata(verification: PaymentVerification) -> dict:
    """Keep the fields worth auditing from a provider payload."""
    data = verification.data or {}
    return clean_metadata({
        "verification": {
            "status": verification.status,
            "gateway_id": str(data["id"]) if data.get("id") is not None else None,
            "gateway_status": data.get("status"),
            "amount": str(data["amount"]) if data.get("amount") is not None else None,
            "currency": data.get("currency"),
            "flw_ref": data.get("flw_ref"),
            "error": verification.error,
        }
    })


# ======================================================================
# Payment service: wallet deposits through a gateway
# ======================================================================
class PaymentService:
    def __init__(
        self,
        session_factory,
        gateways: Dict[str, PaymentGateway],
        currency: str = "USD",
        minimum_deposit: Decimal = Decimal("1.00"),
        pending_max_age_hours: int = 24,
        clock=utcnow,
    ):
        self.session_factory = session_factory
        self.gateways = gateways
        self.currency = currency
        self.minimum_deposit = to_money(minimum_deposit)
        self.pending_max_age_hours = pending_max_age_hours
        self.clock = clock

    def _gateway(self, method: str) -> PaymentGateway:
        gateway = self.gateways.get(method)
        if gateway is None:
            raise InvalidRequest(f"Unsupported payment method: {method}")
        return gateway

    # ------------------------------------------------------
    # 1. Initialize (pending credit row keyed by the reference)
    # ------------------------------------------------------
    async def initialize_payment(self, user_id, amount, payment_method: str = "flutterwave") -> dict:
        try:
            amount = to_money(amount)
        except (InvalidOperation, ValueError, TypeError) as e:
            raise InvalidRequest("Invalid payment amount") from e
        if amount < self.minimum_deposit:
            raise InvalidRequest(f"Minimum deposit is {self.minimum_deposit} {self.currency}")

        gateway = self._gateway(payment_method)

        async with self.session_factory() as session:
            user = await get_user_by_id(session, user_id)
        if user is None:
            raise InvalidRequest("User not found")

        init = await gateway.initialize_payment(PaymentIntent(
            user_id=str(user.id),
            amount=amount,
            currency=self.currency,
            payment_method=payment_method,
            email=user.email,
            name=user.username,
        ))

        tx = Transaction(
            user_id=user.id,
            amount=amount,
            currency=self.currency,
            type="credit",
            status="pending",
            payment_method=payment_method,
            payment_reference=init.reference,
            description=f"Wallet deposit via {payment_method}",
            extra_data=clean_metadata({"gateway": init.gateway_data}),
        )
        async with self.session_factory() as session:
            async with session.begin():
                session.add(tx)

        logger.info(f"🧾 Pending deposit {mask_sensitive(init.reference)} of {amount} {self.currency} recorded")
        return {
            "transaction_id": str(tx.id),
            "payment_reference": init.reference,
            "payment_url": init.payment_url,
            "amount": str(amount),
            "currency": self.currency,
        }

    # ------------------------------------------------------
    # 2. Verify with the gateway, then flip + credit atomically
    # ------------------------------------------------------
    async def verify_and_apply(self, reference: str, user_id=None) -> dict:
        """
        Verify a pending deposit and apply the outcome exactly once.

        The gateway call happens outside any DB transaction. The status flip,
        metadata enrichment and wallet credit then commit as one unit under a
        row lock, so a replayed verification or webhook never credits twice.
        """
        async with self.session_factory() as session:
            result = await session.execute(select(Transaction).where(Transaction.payment_reference == reference))
            tx = result.scalar_one_or_none()

        if tx is None or (user_id is not None and tx.user_id != user_id):
            raise TransactionNotFound()
        if not self._is_gateway_deposit(tx):
            logger.warning(f"🚫 Verification refused for non-deposit {mask_sensitive(reference)}")
            raise TransactionNotFound()
        if tx.status != "pending":
            return self._outcome(tx, credited=False)

        verification = await self._gateway(tx.payment_method).verify_payment(reference, tx.payment_method)
        if verification.status in ("pending", "error"):
            logger.info(f"⏳ Payment {mask_sensitive(reference)} still pending ({verification.error})")
            return self._outcome(tx, credited=False, error=verification.error)

        succeeded = verification.success and self._amount_matches(tx, verification)

        async with self.session_factory() as session:
            async with session.begin():
                locked = await self._lock_transaction(session, reference)
                if not self._is_gateway_deposit(locked):
                    raise TransactionNotFound()
                if locked.status != "pending":
                    # A concurrent verification already applied the outcome
                    return self._outcome(locked, credited=False)

                locked.extra_data = merge_metadata(locked.extra_data, verification_metadata(verification))
                if succeeded:
                    user = await get_user_by_id(session, locked.user_id, for_update=True)
                    user.wallet_balance = to_money((user.wallet_balance or Decimal("0")) + locked.amount)
                    locked.status = "completed"
                else:
                    locked.status = "failed"

        if succeeded:
            logger.info(f"✅ Deposit {mask_sensitive(reference)} credited ({locked.amount} {locked.currency})")
        else:
            logger.info(f"❌ Payment {mask_sensitive(reference)} marked as failed")
        return self._outcome(locked, credited=succeeded, error=None if succeeded else verification.error)

    async def _lock_transaction(self, session: AsyncSession, reference: str) -> Transaction:
        result = await session.execute(
            select(Transaction)
            .where(Transaction.payment_reference == reference)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        tx = result.scalar_one_or_none()
        if tx is None:
            raise TransactionNotFound()
        return tx

    def _is_gateway_deposit(self, tx: Transaction) -> bool:
        # Withdrawals and system rows are never settled by the deposit path
        return tx.type == "credit" and tx.payment_method in self.gateways

    def _amount_matches(self, tx: Transaction, verification: PaymentVerification) -> bool:
        data = verification.data or {}
        try:
            paid = to_money(data.get("amount"))
        except (InvalidOperation, ValueError, TypeError):
            logger.warning(f"⚠️ Unreadable paid amount for {mask_sensitive(tx.payment_reference)}")
            return False

        currency = data.get("currency")
        if paid < tx.amount or (currency and currency != tx.currency):
            logger.warning(
                f"🚫 Amount mismatch for {mask_sensitive(tx.payment_reference)}: "
                f"expected {tx.amount} {tx.currency}, got {paid} {currency}"
            )
            verification.error = "Paid amount does not match the expected amount"
            return False
        return True

    @staticmethod
    def _outcome(tx: Transaction, credited: bool, error: str | None = None) -> dict:
        return {
            "payment_reference": tx.payment_reference,
            "status": tx.status,
            "amount": str(tx.amount),
            "credited": credited,
            "error": error,
        }

    # ------------------------------------------------------
    # 3. Webhook: signature check, raw audit log, verification
    # ------------------------------------------------------
    async def handle_webhook(self, provider: str, headers, raw_body: bytes) -> dict:
        gateway = self._gateway(provider)
        if not gateway.validate_webhook(headers):
            logger.warning(f"⚠️ Invalid {provider} webhook signature")
            raise InvalidSignature()

        body_str = raw_body.decode("utf-8", errors="ignore") if isinstance(raw_body, bytes) else str(raw_body)
        await self.log_transaction(provider, body_str)

        try:
            payload = json.loads(body_str)
        except json.JSONDecodeError as e:
            raise InvalidRequest("Webhook body is not valid JSON") from e

        if not isinstance(payload, dict):
            raise InvalidRequest("Webhook body must be a JSON object")

        data = payload.get("data") if isinstance(payload.get("data"), dict) else {}
        reference = data.get("tx_ref") or data.get("reference") or payload.get("tx_ref") or payload.get("txRef")
        if not reference:
            logger.error("❌ Webhook missing tx_ref; ignoring.")
            raise InvalidRequest("Missing tx_ref")

        # Webhook body status is never trusted; the gateway is asked again
        return await self.verify_and_apply(reference)

    async def log_transaction(self, provider: str, payload: str) -> None:
        async with self.session_factory() as session:
            session.add(TransactionLog(provider=provider, payload=payload))
            await session.commit()

    # ------------------------------------------------------
    # 4. Sweep: deposits that never completed
    # ------------------------------------------------------
    async def expire_stale_pending(self) -> int:
        cutoff = self.clock() - timedelta(hours=self.pending_max_age_hours)
        async with self.session_factory() as session:
            result = await session.execute(
                update(Transaction)
                .where(
                    Transaction.status == "pending",
                    Transaction.type == "credit",
                    Transaction.created_at < cutoff,
                )
                .values(status="failed", updated_at=self.clock())
            )
            await session.commit()

        if result.rowcount:
            logger.info(f"Expired {result.rowcount} stale pending payments.")
        return result.rowcount

    async def aclose(self) -> None:
        for gateway in self.gateways.values():
            await gateway.aclose()
