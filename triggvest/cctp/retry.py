"""Retry and backoff for wallet provider and attestation service calls.

Every external call made by the bridge stages goes through
:py:func:`call_with_retry`. An error classification function decides
whether a failure is worth retrying (RPC hiccup, HTTP 429/5xx) or is
terminal (rejected submission, bad request), so the stages do not need
their own try/log/retry boilerplate.
"""

import enum
import logging
import threading
from dataclasses import dataclass
from typing import Callable, TypeVar

import requests

from triggvest.cctp.errors import ProviderError, TransientProviderError
from triggvest.utils import SYSTEM_CLOCK, Clock

logger = logging.getLogger(__name__)

T = TypeVar("T")

#: HTTP status codes we consider temporary
RETRYABLE_HTTP_STATUS_CODES = frozenset([408, 425, 429, 500, 502, 503, 504])


class ErrorClass(enum.Enum):
    """How :py:func:`call_with_retry` treats an exception."""

    #: Retry with backoff
    transient = "transient"

    #: Re-raise immediately
    terminal = "terminal"


@dataclass(slots=True)
class RetryConfig:
    """Configuration for retry behaviour around external calls.

    Example:

    .. code-block:: python

        # Production (default)
        config = RetryConfig()

        # Fast-fail for tests
        config = RetryConfig.create_test_config()
    """

    #: Maximum attempts, including the first one
    max_attempts: int = 4

    #: Initial delay in seconds between retries (grows with backoff)
    initial_delay: float = 1.0

    #: Maximum delay cap in seconds for exponential backoff
    max_delay: float = 30.0

    #: Multiplier applied to delay after each failed attempt
    backoff_multiplier: float = 2.0

    @classmethod
    def create_test_config(cls) -> "RetryConfig":
        """Create a retry config tuned for fast test feedback."""
        return cls(
            max_attempts=3,
            initial_delay=0.01,
            max_delay=0.05,
            backoff_multiplier=2.0,
        )


#: Default production retry configuration
DEFAULT_RETRY_CONFIG = RetryConfig()


def classify_error(exc: BaseException) -> ErrorClass:
    """Default error classification.

    - Network level failures and rate limits are transient
    - :py:class:`TransientProviderError` is transient
    - Any other :py:class:`ProviderError` is terminal: the provider
      understood the request and refused it
    - Everything else is terminal, so programming errors surface
    """
    if isinstance(exc, TransientProviderError):
        return ErrorClass.transient

    if isinstance(exc, ProviderError):
        return ErrorClass.terminal

    if isinstance(exc, (requests.ConnectionError, requests.Timeout)):
        return ErrorClass.transient

    if isinstance(exc, requests.HTTPError):
        response = exc.response
        if response is not None and response.status_code in RETRYABLE_HTTP_STATUS_CODES:
            return ErrorClass.transient
        return ErrorClass.terminal

    if isinstance(exc, (ConnectionError, TimeoutError)):
        return ErrorClass.transient

    return ErrorClass.terminal


def call_with_retry(
    func: Callable[[], T],
    description: str,
    retry_config: RetryConfig | None = None,
    classify: Callable[[BaseException], ErrorClass] = classify_error,
    clock: Clock = SYSTEM_CLOCK,
    deadline: float | None = None,
    cancel_event: threading.Event | None = None,
) -> T:
    """Call a function, retrying transient failures with exponential backoff.

    :param func:
        Zero-argument callable doing one external call.

    :param description:
        What we are doing, for log messages, e.g. ``"query status of tx 0x..."``.

    :param retry_config:
        Retry behaviour configuration. Uses :data:`DEFAULT_RETRY_CONFIG` when ``None``.

    :param classify:
        Error classification function.

    :param clock:
        Clock used for backoff sleeps.

    :param deadline:
        Clock time after which no backoff sleep may end.
        The last error is raised instead of sleeping past it.

    :param cancel_event:
        Interrupts a backoff sleep. The last error is raised.

    :return:
        Whatever ``func`` returns.

    :raise Exception:
        Terminal errors immediately, transient errors after the last attempt.
    """
    if retry_config is None:
        retry_config = DEFAULT_RETRY_CONFIG

    assert retry_config.max_attempts >= 1, f"Bad retry config: {retry_config}"

    delay = retry_config.initial_delay

    for attempt in range(1, retry_config.max_attempts + 1):
        try:
            return func()
        except Exception as e:
            if classify(e) == ErrorClass.terminal:
                raise

            if attempt >= retry_config.max_attempts:
                logger.warning(
                    "%s failed after %d attempts: %s",
                    description,
                    retry_config.max_attempts,
                    e,
                )
                raise

            if deadline is not None and clock.time() + delay > deadline:
                logger.warning("%s attempt %d failed: %s. No time left to retry", description, attempt, e)
                raise

            logger.warning(
                "%s attempt %d/%d failed: %s. Retrying in %.1fs",
                description,
                attempt,
                retry_config.max_attempts,
                e,
                delay,
            )
            if clock.sleep(delay, cancel_event):
                logger.info("%s cancelled while backing off", description)
                raise
            delay = min(delay * retry_config.backoff_multiplier, retry_config.max_delay)

    raise AssertionError("Unreachable")
