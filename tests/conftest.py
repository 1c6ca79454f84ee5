import uuid
from datetime import datetime
from decimal import Decimal

import pytest

from db import build_engine, build_sessionmaker, init_db
from models import Transaction, User
from services.fast_cache import FastCache
from services.generators.service import GenerationService
from services.question_cache import QuestionCacheEngine
from services.quiz_sessions import QuizSessionService
from services.settlement import SettlementEngine
from services.wallet import WalletService
from tests.fakes import FakeGenerator, FakeRedis, FrozenClock

START = datetime(2024, 5, 1, 12, 0, 0)


@pytest.fixture
def clock():
    return FrozenClock(START)


@pytest.fixture
async def engine(tmp_path):
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'quizgate.db'}")
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_sessionmaker(engine)


@pytest.fixture
def redis_client():
    return FakeRedis()


@pytest.fixture
def fast_cache(redis_client):
    return FastCache(redis_client, default_ttl=3600)


@pytest.fixture
def generator():
    return FakeGenerator()


@pytest.fixture
def generation(generator):
    return GenerationService(generator, timeout_seconds=1.0, max_questions=20)


@pytest.fixture
def question_cache(session_factory, fast_cache, generation, clock):
    return QuestionCacheEngine(session_factory, fast_cache, generation, clock=clock)


@pytest.fixture
def settlement(session_factory, clock):
    return SettlementEngine(session_factory, clock=clock)


@pytest.fixture
def quiz_sessions(session_factory, question_cache, settlement, clock):
    return QuizSessionService(session_factory, question_cache, settlement, clock=clock)


@pytest.fixture
def wallet(session_factory):
    return WalletService(session_factory, currency="USD", entry_fee=Decimal("1.00"))


@pytest.fixture
def make_user(session_factory):
    async def _make_user(balance="0.00", username=None):
        user = User(
            id=uuid.uuid4(),
            username=username or f"player_{uuid.uuid4().hex[:6]}",
            wallet_balance=Decimal(balance),
        )
        async with session_factory() as session:
            session.add(user)
            await session.commit()
        return user

    return _make_user


@pytest.fixture
async def user(make_user):
    return await make_user("5.00")


@pytest.fixture
def add_transaction(session_factory, clock):
    async def _add_transaction(user_id, reference, amount="10.00", status="completed",
                               type="credit", payment_method="flutterwave", created_at=None):
        tx = Transaction(
            user_id=user_id,
            amount=Decimal(amount),
            currency="USD",
            type=type,
            status=status,
            payment_method=payment_method,
            payment_reference=reference,
            description="Wallet deposit",
            extra_data={},
            created_at=created_at or clock(),
        )
        async with session_factory() as session:
            session.add(tx)
            await session.commit()
        return tx

    return _add_transaction


@pytest.fixture
def fetch_user(session_factory):
    async def _fetch_user(user_id):
        async with session_factory() as session:
            return await session.get(User, user_id)

    return _fetch_user
