# ===============================================================
# errors.py: error taxonomy shared by every service
# ===============================================================
from decimal import Decimal


class QuizGateError(Exception):
    """Base error with a stable kind, a user-safe message and an HTTP status."""

    kind = "error"
    status_code = 400
    default_message = "Request failed"

    def __init__(self, message: str | None = None):
        self.message = message or self.default_message
        super().__init__(self.message)

    def to_dict(self) -> dict:
        return {"kind": self.kind, "message": self.message}


class InvalidRequest(QuizGateError):
    kind = "invalid_request"
    default_message = "Invalid request"


class PaymentNotVerified(QuizGateError):
    kind = "payment_not_verified"
    status_code = 402
    default_message = "Payment not verified"


class GenerationFailed(QuizGateError):
    kind = "generation_failed"
    status_code = 503
    default_message = "Failed to generate questions"


class InvalidQuestionIndex(QuizGateError):
    kind = "invalid_question_index"
    default_message = "Invalid question index"


class SessionNotFound(QuizGateError):
    kind = "session_not_found"
    status_code = 404
    default_message = "Quiz session not found"


class SessionNotActive(QuizGateError):
    kind = "session_not_active"
    status_code = 409
    default_message = "Quiz session is not active"


class InsufficientBalance(QuizGateError):
    kind = "insufficient_balance"
    default_message = "Insufficient wallet balance"


class TransactionNotFound(QuizGateError):
    kind = "transaction_not_found"
    status_code = 404
    default_message = "Transaction not found"


class DuplicateSettlement(QuizGateError):
    """Settlement was already applied; callers treat this as an idempotent no-op."""

    kind = "duplicate_settlement"
    status_code = 200
    default_message = "Session already settled"

    def __init__(self, message: str | None = None, reward: Decimal | None = None):
        super().__init__(message)
        self.reward = reward


class PaymentGatewayError(QuizGateError):
    kind = "payment_gateway_error"
    status_code = 502
    default_message = "Payment gateway request failed"


class InvalidSignature(QuizGateError):
    kind = "invalid_signature"
    status_code = 403
    default_message = "Invalid signature"
