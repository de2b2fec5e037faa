"""
Exception hierarchy for htlc_router.

Every error carries a stable `code` and the HTTP status the API layer
answers with.
"""

from typing import Optional


class RouterError(Exception):
    code = "router_error"
    http_status = 500

    def __init__(self, message: str = "", **context):
        super().__init__(message or self.code)
        self.message = message or self.code
        self.context = context

    def to_dict(self):
        body = {"error": self.code, "detail": self.message}
        if self.context:
            body["context"] = self.context
        return body


# -- authority ----------------------------------------------------------------

class UnauthorizedRouter(RouterError):
    code = "unauthorized_router"
    http_status = 403


class NotAuthorized(RouterError):
    code = "not_authorized"
    http_status = 403


class AssetAlreadyRegistered(RouterError):
    code = "asset_already_registered"
    http_status = 409


class AssetInUse(RouterError):
    code = "asset_in_use"
    http_status = 409


class UnsupportedAsset(RouterError):
    code = "unsupported_asset"
    http_status = 404


class UnsupportedChain(RouterError):
    code = "unsupported_chain"
    http_status = 400


# -- swaps --------------------------------------------------------------------

class InvalidSwapRequest(RouterError, ValueError):
    code = "invalid_swap_request"
    http_status = 422


class SwapNotFound(RouterError):
    code = "swap_not_found"
    http_status = 404


class InvalidSwapState(RouterError):
    code = "invalid_swap_state"
    http_status = 409


class SwapExpired(InvalidSwapState):
    code = "swap_expired"


class AlreadyFinalized(InvalidSwapState):
    code = "already_finalized"


class SwapNotReady(InvalidSwapState):
    code = "swap_not_ready"


class CancellationRejected(InvalidSwapState):
    code = "cancellation_rejected"


class InvalidSecret(RouterError):
    code = "invalid_secret"
    http_status = 400


class RollbackPartialFailure(RouterError):
    code = "rollback_partial_failure"
    http_status = 500


# -- ledger adapters ----------------------------------------------------------

class LedgerError(RouterError):
    """Adapter failure. `recoverable` errors may be retried."""
    code = "ledger_error"
    http_status = 502

    def __init__(self, message: str = "", chain: Optional[str] = None,
                 recoverable: bool = True, **context):
        super().__init__(message, **context)
        self.chain = chain
        self.recoverable = recoverable

    def __str__(self):
        prefix = f"[{self.chain}] " if self.chain else ""
        return f"{prefix}{self.message}"


class LockFailed(LedgerError):
    code = "lock_failed"


class ClaimFailed(LedgerError):
    code = "claim_failed"


class RefundFailed(LedgerError):
    code = "refund_failed"


# -- confirmations ------------------------------------------------------------

class ConfirmationNotFound(RouterError):
    code = "confirmation_not_found"
    http_status = 404


class AlreadyTerminal(RouterError):
    code = "already_terminal"
    http_status = 409


class DuplicateConfirmation(RouterError):
    code = "duplicate_confirmation"
    http_status = 200


class ConfirmationLimitExceeded(RouterError):
    code = "confirmation_limit_exceeded"
    http_status = 409


# -- configuration ------------------------------------------------------------

class ConfigError(RouterError, ValueError):
    code = "config_error"
    http_status = 500
