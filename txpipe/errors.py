from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from txpipe.common.retry import AttemptFailure

RATE_LIMIT_MARKERS = (
    "rate limit",
    "too many requests",
    "network congested",
    "congested",
    "try again later",
)


def is_rate_limit_message(message: str) -> bool:
    lowered = message.lower()
    return any(marker in lowered for marker in RATE_LIMIT_MARKERS)


class TxPipelineError(RuntimeError):
    pass


class PreparationError(TxPipelineError):
    def __init__(self, message: str, *, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class SigningError(TxPipelineError):
    def __init__(
        self,
        message: str,
        *,
        wallet_kind: str | None = None,
        attempts: list[tuple[str, Exception]] | None = None,
    ) -> None:
        super().__init__(message)
        self.wallet_kind = wallet_kind
        self.attempts = list(attempts or [])


class UserRejectedError(SigningError):
    pass


class WalletUnavailableError(SigningError):
    pass


class SigningTimeoutError(SigningError):
    pass


class NoWalletAvailableError(SigningError):
    pass


class RpcMethodError(TxPipelineError):
    def __init__(
        self,
        message: str,
        *,
        method: str,
        endpoint: str | None = None,
        status: int | None = None,
        code: int | None = None,
        data: Any = None,
        retry_after_seconds: float | None = None,
    ) -> None:
        super().__init__(message)
        self.method = method
        self.endpoint = endpoint
        self.status = status
        self.code = code
        self.data = data
        self.retry_after_seconds = retry_after_seconds

    @property
    def rate_limited(self) -> bool:
        return self.status == 429 or is_rate_limit_message(str(self))


class SubmissionError(TxPipelineError):
    def __init__(
        self,
        message: str,
        *,
        transient: bool,
        endpoint: str | None = None,
        status: int | None = None,
        skip_preflight: bool | None = None,
        endpoint_fault: bool = False,
    ) -> None:
        super().__init__(message)
        self.transient = transient
        self.endpoint = endpoint
        self.status = status
        self.skip_preflight = skip_preflight
        # True when the endpoint itself misbehaved (unreachable, throttled, 5xx), not the transaction.
        self.endpoint_fault = endpoint_fault


class SubmissionExhaustedError(SubmissionError):
    def __init__(self, message: str, *, attempts: list[AttemptFailure]) -> None:
        last = attempts[-1] if attempts else None
        super().__init__(
            message,
            transient=True,
            endpoint=last.endpoint if last else None,
            status=getattr(last.error, "status", None) if last else None,
        )
        self.attempts = list(attempts)


class SignatureMismatchError(SubmissionError):
    def __init__(self, message: str, *, expected: str, received: str, endpoint: str | None = None) -> None:
        super().__init__(message, transient=False, endpoint=endpoint)
        self.expected = expected
        self.received = received


class ConfirmationTimeoutError(TxPipelineError):
    def __init__(self, message: str, *, signature: str, last_status: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.signature = signature
        self.last_status = last_status


class TransactionFailedError(TxPipelineError):
    def __init__(
        self,
        message: str,
        *,
        signature: str,
        slot: int | None = None,
        error: Any = None,
    ) -> None:
        super().__init__(message)
        self.signature = signature
        self.slot = slot
        self.error = error


class BlockhashExpiredError(TransactionFailedError):
    def __init__(self, message: str, *, signature: str, last_valid_block_height: int) -> None:
        super().__init__(message, signature=signature, error="BlockhashExpired")
        self.last_valid_block_height = last_valid_block_height


class MergeConflictError(TxPipelineError):
    pass


class BundleBuildError(TxPipelineError):
    pass


class BundleTipPlacementError(BundleBuildError):
    pass


class BundleRateLimitError(TxPipelineError):
    def __init__(
        self,
        message: str,
        *,
        endpoint: str,
        status: int | None = 429,
        retry_after_seconds: float | None = None,
    ) -> None:
        super().__init__(message)
        self.endpoint = endpoint
        self.status = status
        self.retry_after_seconds = retry_after_seconds


class BundleSubmissionError(TxPipelineError):
    def __init__(
        self,
        message: str,
        *,
        endpoint: str,
        status: int | None = None,
        unreachable: bool = False,
    ) -> None:
        super().__init__(message)
        self.endpoint = endpoint
        self.status = status
        self.unreachable = unreachable


class BundleSubmissionExhaustedError(TxPipelineError):
    def __init__(self, message: str, *, attempts: list[AttemptFailure]) -> None:
        super().__init__(message)
        self.attempts = list(attempts)

    @property
    def last_endpoint(self) -> str | None:
        return self.attempts[-1].endpoint if self.attempts else None

    @property
    def last_status(self) -> int | None:
        return getattr(self.attempts[-1].error, "status", None) if self.attempts else None


class BundleOutcomeError(TxPipelineError):
    def __init__(self, message: str, *, bundle_id: str, reason: str | None = None) -> None:
        super().__init__(message)
        self.bundle_id = bundle_id
        self.reason = reason


class BundleFailedError(BundleOutcomeError):
    pass


class BundleInvalidError(BundleOutcomeError):
    pass
