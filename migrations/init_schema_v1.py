# ===============================================================
# migrations/init_schema_v1.py
# Creates ALL core tables from models.py (idempotent)
# Safe to run on a fresh Postgres DB.
# ===============================================================
import os
import json
from datetime import datetime, timezone
import psycopg2

MIGRATION_NAME = "init_schema_v1"


def main():
    database_url = os.environ.get("DATABASE_URL")
    if not database_url:
        print("ERROR: DATABASE_URL not found in env")
        return

    # psycopg2 needs sync URL
    if database_url.startswith("postgresql+asyncpg://"):
        database_url = database_url.replace("postgresql+asyncpg://", "postgresql://", 1)

    conn = psycopg2.connect(database_url, sslmode=os.environ.get("PGSSLMODE", "require"))
    cur = conn.cursor()

    try:
        # -------------------------------------------------------
        # 0) schema_migrations table
        # -------------------------------------------------------
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS schema_migrations (
                name TEXT PRIMARY KEY,
                applied_at TIMESTAMPTZ DEFAULT CURRENT_TIMESTAMP,
                meta JSONB DEFAULT '{}'::jsonb
            );
            """
        )

        # Stop if already applied
        cur.execute("SELECT 1 FROM schema_migrations WHERE name=%s LIMIT 1;", (MIGRATION_NAME,))
        if cur.fetchone():
            print(f"✅ Migration already applied: {MIGRATION_NAME}")
            return

        print(f"🔧 Starting migration: {MIGRATION_NAME}")

        # -------------------------------------------------------
        # 1) Extensions
        # -------------------------------------------------------
        cur.execute("CREATE EXTENSION IF NOT EXISTS pgcrypto;")  # gen_random_uuid()
        print("✅ pgcrypto ensured")

        # -------------------------------------------------------
        # 2) Core tables (timestamps are naive UTC)
        # -------------------------------------------------------

        # USERS
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS users (
                id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
                username TEXT,
                email TEXT UNIQUE,
                role TEXT NOT NULL DEFAULT 'user',
                wallet_balance NUMERIC(12, 2) NOT NULL DEFAULT 0,
                created_at TIMESTAMP DEFAULT (NOW() AT TIME ZONE 'utc'),
                updated_at TIMESTAMP DEFAULT (NOW() AT TIME ZONE 'utc'),
                CONSTRAINT check_wallet_non_negative CHECK (wallet_balance >= 0),
                CONSTRAINT check_user_role CHECK (role IN ('user','admin'))
            );
            """
        )
        print("✅ users ensured")

        # AI QUESTION SETS (durable cache tier)
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS ai_question_sets (
                id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
                category TEXT NOT NULL,
                difficulty TEXT NOT NULL,
                questions JSON NOT NULL,
                ai_model TEXT NOT NULL,
                ai_prompt TEXT,
                tokens_used INTEGER NOT NULL DEFAULT 0,
                cost NUMERIC(12, 6) NOT NULL DEFAULT 0,
                cache_key TEXT NOT NULL,
                is_active BOOLEAN NOT NULL DEFAULT TRUE,
                usage_count INTEGER NOT NULL DEFAULT 0,
                last_used TIMESTAMP,
                created_at TIMESTAMP NOT NULL DEFAULT (NOW() AT TIME ZONE 'utc'),
                expires_at TIMESTAMP NOT NULL,
                extra_data JSON,
                CONSTRAINT check_question_set_difficulty CHECK (difficulty IN ('easy','medium','hard'))
            );
            """
        )
        cur.execute("CREATE INDEX IF NOT EXISTS ix_ai_question_sets_cache_key ON ai_question_sets (cache_key);")
        cur.execute(
            """
            CREATE INDEX IF NOT EXISTS ix_question_sets_lookup
            ON ai_question_sets (category, difficulty, is_active, expires_at);
            """
        )
        print("✅ ai_question_sets ensured")

        # QUIZ SESSIONS
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS quiz_sessions (
                id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
                user_id UUID NOT NULL REFERENCES users(id) ON DELETE CASCADE,
                category TEXT NOT NULL,
                difficulty TEXT NOT NULL DEFAULT 'medium',
                questions JSON NOT NULL,
                user_answers JSON NOT NULL DEFAULT '[]'::json,
                score INTEGER NOT NULL DEFAULT 0,
                total_questions INTEGER NOT NULL,
                status TEXT NOT NULL DEFAULT 'active',
                payment_reference TEXT NOT NULL UNIQUE,
                reward_earned NUMERIC(12, 2) NOT NULL DEFAULT 0,
                time_started TIMESTAMP NOT NULL DEFAULT (NOW() AT TIME ZONE 'utc'),
                time_completed TIMESTAMP,
                updated_at TIMESTAMP DEFAULT (NOW() AT TIME ZONE 'utc'),
                CONSTRAINT check_quiz_session_status CHECK (status IN ('active','completed','abandoned'))
            );
            """
        )
        cur.execute("CREATE INDEX IF NOT EXISTS ix_quiz_sessions_user_id ON quiz_sessions (user_id);")
        cur.execute(
            """
            CREATE INDEX IF NOT EXISTS ix_quiz_sessions_user_status
            ON quiz_sessions (user_id, status, time_completed);
            """
        )
        print("✅ quiz_sessions ensured")

        # TRANSACTIONS (ledger)
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS transactions (
                id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
                user_id UUID NOT NULL REFERENCES users(id) ON DELETE CASCADE,
                amount NUMERIC(12, 2) NOT NULL,
                currency VARCHAR(3) NOT NULL DEFAULT 'USD',
                type TEXT NOT NULL,
                status TEXT NOT NULL DEFAULT 'pending',
                payment_method TEXT NOT NULL,
                payment_reference TEXT NOT NULL UNIQUE,
                description TEXT NOT NULL,
                metadata JSON,
                created_at TIMESTAMP NOT NULL DEFAULT (NOW() AT TIME ZONE 'utc'),
                updated_at TIMESTAMP DEFAULT (NOW() AT TIME ZONE 'utc'),
                CONSTRAINT check_transaction_type CHECK (type IN ('debit','credit')),
                CONSTRAINT check_transaction_status CHECK (status IN ('pending','completed','failed')),
                CONSTRAINT check_transaction_amount CHECK (amount >= 0)
            );
            """
        )
        cur.execute("CREATE INDEX IF NOT EXISTS ix_transactions_user_id ON transactions (user_id);")
        cur.execute(
            """
            CREATE INDEX IF NOT EXISTS ix_transactions_pending_sweep
            ON transactions (status, type, created_at);
            """
        )
        print("✅ transactions ensured")

        # TRANSACTION LOGS (raw webhook payloads)
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS transaction_logs (
                id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
                provider TEXT NOT NULL,
                payload TEXT NOT NULL,
                created_at TIMESTAMP DEFAULT (NOW() AT TIME ZONE 'utc')
            );
            """
        )
        print("✅ transaction_logs ensured")

        # -------------------------------------------------------
        # 3) Record migration
        # -------------------------------------------------------
        cur.execute(
            "INSERT INTO schema_migrations (name, meta) VALUES (%s, %s::jsonb)",
            (
                MIGRATION_NAME,
                json.dumps(
                    {
                        "applied_by": "migration_script",
                        "applied_at": datetime.now(timezone.utc).isoformat(),
                        "notes": "Created users, question cache, quiz sessions and ledger tables",
                    }
                ),
            ),
        )

        conn.commit()
        print(f"🎉 Migration complete: {MIGRATION_NAME}")

    except Exception as e:
        conn.rollback()
        print(f"❌ Migration failed: {e}")
        raise
    finally:
        cur.close()
        conn.close()


if __name__ == "__main__":
    main()
