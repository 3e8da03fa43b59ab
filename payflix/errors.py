"""
Error taxonomy for session payments.

Every failure raised by the ledger, the orchestrator or the chain client is a
``PayflixError`` with a fixed shape: an ``ErrorKind``, a specific ``code``, an
HTTP status hint, a short human message and a ``details`` dict. The HTTP layer
renders ``to_payload()`` and never inspects ad hoc attributes.
"""
from enum import Enum
from typing import Any, Dict, Optional


class ErrorKind(str, Enum):
    VALIDATION = 'validation_error'
    NOT_FOUND = 'not_found'
    INSUFFICIENT_BALANCE = 'insufficient_balance'
    INSUFFICIENT_SESSION_BALANCE = 'insufficient_session_balance'
    APPROVAL_EXCEEDS_BALANCE = 'approval_exceeds_balance'
    SESSION_EXPIRED = 'session_expired'
    INTEGRITY = 'integrity_error'
    CHAIN_SUBMISSION = 'chain_submission_error'
    LEDGER_DRIFT = 'ledger_drift'
    CONFLICT = 'conflict'
    CONFIGURATION = 'configuration_error'


class ActionRequired(str, Enum):
    DEPOSIT = 'deposit'
    TOP_UP = 'top_up'
    FUND_WALLET = 'fund_wallet'


def _camel(key: str) -> str:
    head, *rest = key.split('_')
    return head + ''.join(part.title() for part in rest)


class PayflixError(Exception):
    """Base error for session payments."""

    kind = ErrorKind.VALIDATION
    code = 'error'
    http_status = 400
    action_required: Optional[ActionRequired] = None
    retryable = False

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            'error': self.code,
            'kind': self.kind.value,
            'message': self.message,
        }
        if self.action_required is not None:
            payload['actionRequired'] = self.action_required.value
        if self.retryable:
            payload['retryable'] = True
        for key, value in self.details.items():
            payload[_camel(key)] = value
        return payload


class ValidationError(PayflixError):
    code = 'invalid_request'


class InvalidWithdrawAmount(ValidationError):
    code = 'invalid_withdraw_amount'


class InvalidVideoConfig(ValidationError):
    code = 'invalid_video_config'


class NotFoundError(PayflixError):
    kind = ErrorKind.NOT_FOUND
    code = 'not_found'
    http_status = 404


class VideoNotFound(NotFoundError):
    code = 'video_not_found'


class SessionNotFound(NotFoundError):
    """Pending session missing, expired or already consumed."""

    code = 'session_not_found'


class NoActiveSession(NotFoundError):
    code = 'no_active_session'
    http_status = 402
    action_required = ActionRequired.DEPOSIT


class SessionExpired(PayflixError):
    kind = ErrorKind.SESSION_EXPIRED
    code = 'session_expired'
    http_status = 402
    action_required = ActionRequired.DEPOSIT


class InsufficientBalance(PayflixError):
    """The wallet itself does not hold enough tokens."""

    kind = ErrorKind.INSUFFICIENT_BALANCE
    code = 'insufficient_balance'
    http_status = 402
    action_required = ActionRequired.FUND_WALLET


class InsufficientSessionBalance(PayflixError):
    kind = ErrorKind.INSUFFICIENT_SESSION_BALANCE
    code = 'insufficient_session_balance'
    http_status = 402
    action_required = ActionRequired.TOP_UP


class ApprovalExceedsBalance(PayflixError):
    kind = ErrorKind.APPROVAL_EXCEEDS_BALANCE
    code = 'approval_exceeds_balance'


class IntegrityError(PayflixError):
    """Encrypted key blob failed authentication. Never auto-repaired."""

    kind = ErrorKind.INTEGRITY
    code = 'key_integrity_error'
    http_status = 500


class ChainSubmissionError(PayflixError):
    kind = ErrorKind.CHAIN_SUBMISSION
    code = 'chain_submission_failed'
    http_status = 502


class TransactionAlreadyProcessed(ChainSubmissionError):
    code = 'transaction_already_processed'
    http_status = 409


class BlockhashExpired(ChainSubmissionError):
    code = 'transaction_expired'
    http_status = 400


class ProgramError(ChainSubmissionError):
    code = 'transaction_failed'
    http_status = 400


class RpcUnavailable(ChainSubmissionError):
    code = 'rpc_unavailable'
    http_status = 503
    retryable = True


class ConfirmationTimeout(ChainSubmissionError):
    """Submitted but not yet observed as confirmed. Safe to re-check."""

    code = 'confirmation_timeout'
    http_status = 504
    retryable = True


class LedgerDriftError(PayflixError):
    kind = ErrorKind.LEDGER_DRIFT
    code = 'ledger_drift'
    http_status = 500


class PaymentInProgress(PayflixError):
    kind = ErrorKind.CONFLICT
    code = 'payment_in_progress'
    http_status = 409
    retryable = True


class ConfigurationError(PayflixError):
    kind = ErrorKind.CONFIGURATION
    code = 'facilitator_misconfigured'
    http_status = 500
