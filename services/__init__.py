# ========================================================
# services/__init__.py
# ========================================================
"""
Business Logic Services.

Process-scoped components built once at startup (see app.build_components):

- question_cache.py: two-tier question cache in front of the generators
- quiz_sessions.py: quiz session state machine and read views
- settlement.py: reward formula and atomic wallet/ledger settlement
- wallet.py: entry fees, withdrawals, balance and history
- payments.py: Flutterwave checkout, verification and webhooks
"""
