#=================================================================
# models.py (users, wallet ledger, question cache, quiz sessions)
#=================================================================
import uuid
from decimal import Decimal
from sqlalchemy import (
    Column, String, Integer, ForeignKey, Text, TIMESTAMP, CheckConstraint,
    Boolean, JSON, Numeric, Uuid, Index
)
from base import Base  # from base.py
from utils.clock import utcnow


# ================================================================
# 1. USERS (wallet balance lives here)
# ================================================================
class User(Base):
    __tablename__ = "users"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    username = Column(String, nullable=True)
    email = Column(String, unique=True, nullable=True)
    role = Column(String, default="user", nullable=False)

    # Cached current value; the transactions table is the audit trail
    wallet_balance = Column(Numeric(12, 2), default=Decimal("0.00"), nullable=False)

    created_at = Column(TIMESTAMP, default=utcnow)
    updated_at = Column(TIMESTAMP, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        CheckConstraint("wallet_balance >= 0", name="check_wallet_non_negative"),
        CheckConstraint("role IN ('user','admin')", name="check_user_role"),
    )


# ================================================================
# 2. QUESTION SETS (durable cache tier)
# ================================================================
class QuestionSet(Base):
    __tablename__ = "ai_question_sets"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)

    category = Column(String, nullable=False)
    difficulty = Column(String, nullable=False)
    questions = Column(JSON, nullable=False)  # list of question dicts

    ai_model = Column(String, nullable=False)
    ai_prompt = Column(Text, nullable=True)
    tokens_used = Column(Integer, default=0, nullable=False)
    cost = Column(Numeric(12, 6), default=Decimal("0"), nullable=False)

    # Shared by every entry generated in the same hour bucket
    cache_key = Column(String, nullable=False, index=True)

    is_active = Column(Boolean, default=True, nullable=False)
    usage_count = Column(Integer, default=0, nullable=False)
    last_used = Column(TIMESTAMP, nullable=True)

    created_at = Column(TIMESTAMP, default=utcnow, nullable=False)
    expires_at = Column(TIMESTAMP, nullable=False)

    extra_data = Column(JSON, nullable=True, default=dict)

    __table_args__ = (
        CheckConstraint("difficulty IN ('easy','medium','hard')", name="check_question_set_difficulty"),
        Index("ix_question_sets_lookup", "category", "difficulty", "is_active", "expires_at"),
    )

    @property
    def question_count(self) -> int:
        return len(self.questions or [])


# ================================================================
# 3. QUIZ SESSIONS
# ================================================================
class QuizSession(Base):
    __tablename__ = "quiz_sessions"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = Column(Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)

    category = Column(String, nullable=False)
    difficulty = Column(String, nullable=False, default="medium")

    # Snapshot copied at creation; no link back to the cache entry
    questions = Column(JSON, nullable=False)
    user_answers = Column(JSON, nullable=False, default=list)

    score = Column(Integer, default=0, nullable=False)
    total_questions = Column(Integer, nullable=False)
    status = Column(String, default="active", nullable=False)

    # One session per verified payment
    payment_reference = Column(String, unique=True, nullable=False)
    reward_earned = Column(Numeric(12, 2), default=Decimal("0.00"), nullable=False)

    time_started = Column(TIMESTAMP, default=utcnow, nullable=False)
    time_completed = Column(TIMESTAMP, nullable=True)
    updated_at = Column(TIMESTAMP, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        CheckConstraint("status IN ('active','completed','abandoned')", name="check_quiz_session_status"),
        Index("ix_quiz_sessions_user_status", "user_id", "status", "time_completed"),
    )


# ================================================================
# 4. TRANSACTIONS (append-only ledger)
# ================================================================
class Transaction(Base):
    __tablename__ = "transactions"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = Column(Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)

    amount = Column(Numeric(12, 2), nullable=False)
    currency = Column(String(3), nullable=False, default="USD")
    type = Column(String, nullable=False)
    status = Column(String, default="pending", nullable=False)

    payment_method = Column(String, nullable=False)
    # Idempotency key across the whole ledger
    payment_reference = Column(String, unique=True, nullable=False)
    description = Column(String, nullable=False)
    extra_data = Column("metadata", JSON, nullable=True, default=dict)

    created_at = Column(TIMESTAMP, default=utcnow, nullable=False)
    updated_at = Column(TIMESTAMP, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        CheckConstraint("type IN ('debit','credit')", name="check_transaction_type"),
        CheckConstraint("status IN ('pending','completed','failed')", name="check_transaction_status"),
        CheckConstraint("amount >= 0", name="check_transaction_amount"),
        Index("ix_transactions_pending_sweep", "status", "type", "created_at"),
    )

    def to_dict(self) -> dict:
        return {
            "id": str(self.id),
            "amount": str(self.amount),
            "currency": self.currency,
            "type": self.type,
            "status": self.status,
            "payment_method": self.payment_method,
            "payment_reference": self.payment_reference,
            "description": self.description,
            "metadata": self.extra_data or {},
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


# ================================================================
# 5. TRANSACTION LOG (raw provider payloads)
# ================================================================
class TransactionLog(Base):
    __tablename__ = "transaction_logs"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    provider = Column(String, nullable=False)
    payload = Column(Text, nullable=False)
    created_at = Column(TIMESTAMP, default=utcnow)
