# =====================================================
# app.py
# =====================================================
import os
import logging
from dataclasses import dataclass
from typing import Optional

# Force unbuffered output (Render needs this for real-time logs)
os.environ["PYTHONUNBUFFERED"] = "1"

from fastapi import FastAPI, Request, APIRouter
from fastapi.responses import JSONResponse

import config
from db import build_engine, build_sessionmaker, check_connection, init_db
from errors import QuizGateError
from logging_setup import setup_logging, capture_exception
from services.fast_cache import FastCache, build_redis_client
from services.generators.openai_chat import ChatCompletionsGenerator
from services.generators.service import GenerationService
from services.payments import FlutterwaveGateway, PaymentService
from services.question_cache import QuestionCacheEngine
from services.quiz_sessions import QuizSessionService
from services.settlement import RewardPolicy, SettlementEngine
from services.wallet import WalletService
from tasks import start_background_tasks, stop_background_tasks
from tasks.sweeper import run_all_sweeps

logger = logging.getLogger(__name__)

router = APIRouter()


# -------------------------------------------------
# Process-scoped components (built once at startup)
# -------------------------------------------------
@dataclass
class Components:
    engine: object
    session_factory: object
    fast_cache: FastCache
    generator: ChatCompletionsGenerator
    question_cache: QuestionCacheEngine
    settlement: SettlementEngine
    quiz_sessions: QuizSessionService
    wallet: WalletService
    payments: PaymentService

    async def aclose(self) -> None:
        await self.payments.aclose()
        await self.generator.aclose()
        await self.fast_cache.close()
        await self.engine.dispose()


def reward_policy_from_config() -> RewardPolicy:
    return RewardPolicy(
        unit_per_question=config.REWARD_UNIT_PER_QUESTION,
        avg_seconds_per_question=config.AVG_SECONDS_PER_QUESTION,
        per_minute_rate=config.TIME_BONUS_PER_MINUTE,
        win_accuracy=config.STREAK_WIN_ACCURACY,
        per_win_bonus=config.STREAK_BONUS_PER_WIN,
        streak_window_hours=config.STREAK_WINDOW_HOURS,
    )


def build_components() -> Components:
    engine = build_engine(config.DATABASE_URL, echo=config.SQL_ECHO)
    session_factory = build_sessionmaker(engine)

    fast_cache = FastCache(build_redis_client(config.REDIS_URL), default_ttl=config.FAST_CACHE_TTL_SECONDS)
    generator = ChatCompletionsGenerator(
        api_key=config.OPENAI_API_KEY,
        model=config.OPENAI_MODEL,
        base_url=config.OPENAI_BASE_URL,
        timeout=config.GENERATION_TIMEOUT_SECONDS,
    )
    generation = GenerationService(
        generator,
        timeout_seconds=config.GENERATION_TIMEOUT_SECONDS,
        max_questions=config.MAX_QUESTIONS_PER_SET,
    )

    question_cache = QuestionCacheEngine(
        session_factory,
        fast_cache,
        generation,
        fast_ttl_seconds=config.FAST_CACHE_TTL_SECONDS,
        durable_ttl_hours=config.DURABLE_CACHE_TTL_HOURS,
        max_questions=config.MAX_QUESTIONS_PER_SET,
    )
    settlement = SettlementEngine(session_factory, policy=reward_policy_from_config(), currency=config.LEDGER_CURRENCY)
    quiz_sessions = QuizSessionService(
        session_factory,
        question_cache,
        settlement,
        default_question_count=config.DEFAULT_QUESTION_COUNT,
        max_age_hours=config.SESSION_MAX_AGE_HOURS,
    )
    wallet = WalletService(session_factory, currency=config.LEDGER_CURRENCY, entry_fee=config.QUIZ_ENTRY_FEE)
    payments = PaymentService(
        session_factory,
        gateways={
            "flutterwave": FlutterwaveGateway(
                secret_key=config.FLW_SECRET_KEY,
                secret_hash=config.FLW_SECRET_HASH,
                base_url=config.FLW_BASE_URL,
                redirect_url=config.FLW_REDIRECT_URL,
            ),
        },
        currency=config.LEDGER_CURRENCY,
        minimum_deposit=config.MINIMUM_DEPOSIT,
        pending_max_age_hours=config.PENDING_PAYMENT_MAX_AGE_HOURS,
    )

    return Components(
        engine=engine,
        session_factory=session_factory,
        fast_cache=fast_cache,
        generator=generator,
        question_cache=question_cache,
        settlement=settlement,
        quiz_sessions=quiz_sessions,
        wallet=wallet,
        payments=payments,
    )


# -------------------------------------------------
# Error → response mapping
# -------------------------------------------------
async def quizgate_error_handler(request: Request, exc: QuizGateError):
    body = {"success": False, "error": exc.to_dict()}
    if getattr(exc, "reward", None) is not None:
        body["reward"] = str(exc.reward)
    return JSONResponse(status_code=exc.status_code, content=body)


async def unexpected_error_handler(request: Request, exc: Exception):
    logger.exception(f"❌ Unhandled error on {request.method} {request.url.path}")
    capture_exception(exc)

    error = {"kind": "internal_error", "message": "Internal server error"}
    if config.DEBUG:
        error["detail"] = f"{type(exc).__name__}: {exc}"
    return JSONResponse(status_code=500, content={"success": False, "error": error})


# -------------------------------------------------
# Routes
# -------------------------------------------------
@router.get("/")
@router.head("/")
async def root():
    return {
        "status": "ok",
        "message": "QuizGate is running ✅",
        "health": "Check /health for component status",
    }


@router.get("/health")
@router.head("/health")
async def health_check(request: Request):
    components: Optional[Components] = getattr(request.app.state, "components", None)
    if components is None:
        return {"status": "starting", "database": False, "redis": False}

    try:
        database_ok = await check_connection(components.engine)
    except Exception:
        database_ok = False
    redis_ok = await components.fast_cache.ping()
    return {
        "status": "ok" if database_ok else "degraded",
        "database": database_ok,
        # The fast tier fails open, so Redis being down only degrades latency
        "redis": redis_ok,
    }


@router.post("/flw/webhook")
async def flutterwave_webhook(request: Request):
    """
    Flutterwave webhook receiver.
    - Validates verif-hash with constant-time compare
    - Logs the raw payload
    - Re-verifies with Flutterwave before anything is credited
    """
    components: Components = request.app.state.components
    raw_body = await request.body()
    outcome = await components.payments.handle_webhook("flutterwave", request.headers, raw_body)
    return JSONResponse({"status": "ok", "payment": outcome})


# -------------------------------------------------
# App factory
# -------------------------------------------------
def create_app(components: Optional[Components] = None) -> FastAPI:
    """
    When `components` is given (tests), startup skips config validation,
    component construction and background tasks.
    """
    app = FastAPI(title="QuizGate")
    app.include_router(router)
    app.add_exception_handler(QuizGateError, quizgate_error_handler)
    app.add_exception_handler(Exception, unexpected_error_handler)
    app.state.components = components

    @app.on_event("startup")
    async def on_startup():
        if app.state.components is not None:
            return

        setup_logging()
        logger.info("🚀 Starting up QuizGate...")
        config.validate_config()

        app.state.components = build_components()
        await check_connection(app.state.components.engine)
        if config.DEBUG:
            await init_db(app.state.components.engine)

        try:
            swept = await run_all_sweeps(app.state.components)
            logger.info(f"🧹 Startup sweep: {swept}")
        except Exception as e:
            logger.warning(f"⚠️ Startup sweep failed: {e}")

        await start_background_tasks(app.state.components)

    @app.on_event("shutdown")
    async def on_shutdown():
        try:
            await stop_background_tasks()
            if app.state.components is not None:
                await app.state.components.aclose()
                logger.info("🛑 Components closed cleanly.")
        except Exception as e:
            logger.warning(f"⚠️ Error while shutting down: {e}")

    return app


app = create_app()
