from .async_utils import Deadline, guarded_call, wait_with_stop
from .logging import log_event, redact_text, redact_value
from .retry import AttemptFailure, RetryPolicy, exponential_backoff, run_with_retry

__all__ = [
    "AttemptFailure",
    "Deadline",
    "RetryPolicy",
    "exponential_backoff",
    "guarded_call",
    "log_event",
    "redact_text",
    "redact_value",
    "run_with_retry",
    "wait_with_stop",
]
