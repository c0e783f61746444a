from .logs import configure_logging, log_event
from .retry import RetryPolicy, call_with_retry

__all__ = ["RetryPolicy", "call_with_retry", "configure_logging", "log_event"]
