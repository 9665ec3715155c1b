"""Wait for a submitted transaction to reach a terminal chain state."""

import enum
import logging
import threading

from triggvest.cctp.provider import WalletProvider
from triggvest.cctp.retry import ErrorClass, RetryConfig, call_with_retry, classify_error
from triggvest.cctp.state import ChainTransactionHandle, TransactionState
from triggvest.utils import SYSTEM_CLOCK, Clock, shorten_hex

logger = logging.getLogger(__name__)


class ConfirmationOutcome(enum.Enum):
    """How :py:func:`wait_for_confirmation` ended."""

    confirmed = "confirmed"

    #: Reverted or dropped
    failed = "failed"

    #: Budget exhausted or cancelled. The transaction may still confirm later.
    timed_out = "timed_out"


def wait_for_confirmation(
    provider: WalletProvider,
    handle: ChainTransactionHandle,
    poll_interval: float,
    timeout: float,
    clock: Clock = SYSTEM_CLOCK,
    retry_config: RetryConfig | None = None,
    cancel_event: threading.Event | None = None,
) -> ConfirmationOutcome:
    """Poll transaction status until confirmed, failed or out of time.

    Updates ``handle.status`` and ``handle.chain_tx_hash`` in place.
    Status queries failing with transient errors, after retries,
    count as "still pending".

    :param poll_interval:
        Seconds between status queries

    :param timeout:
        Total budget in seconds. We never sleep past it.

    :param cancel_event:
        Set to stop polling at the next wake-up.

    :return:
        :py:attr:`ConfirmationOutcome.timed_out` is not a failure.
        The caller keeps the transfer resumable at the same phase.
    """
    assert poll_interval > 0, f"Bad poll interval {poll_interval}"

    tx_id = shorten_hex(handle.transaction_id)
    started_at = clock.time()
    deadline = started_at + timeout
    attempt = 0

    while True:
        if cancel_event is not None and cancel_event.is_set():
            logger.info("Confirmation wait for %s on %s cancelled", tx_id, handle.network.value)
            return ConfirmationOutcome.timed_out

        attempt += 1
        log_level = logging.INFO if attempt == 1 else logging.DEBUG
        logger.log(
            log_level,
            "Waiting for confirmation of %s on %s, attempt=%d, elapsed=%.1fs",
            tx_id,
            handle.network.value,
            attempt,
            clock.time() - started_at,
        )

        try:
            status = call_with_retry(
                lambda: provider.query_transaction_status(handle),
                f"Query status of {tx_id}",
                retry_config=retry_config,
                clock=clock,
                deadline=deadline,
                cancel_event=cancel_event,
            )
        except Exception as e:
            if classify_error(e) == ErrorClass.terminal:
                raise
            logger.warning("Could not query status of %s, treating as pending: %s", tx_id, e)
        else:
            handle.observe(status)
            if status.state == TransactionState.confirmed:
                logger.info("Transaction %s confirmed on %s, hash %s", tx_id, handle.network.value, handle.chain_tx_hash)
                return ConfirmationOutcome.confirmed
            elif status.state == TransactionState.failed:
                logger.warning("Transaction %s failed on %s", tx_id, handle.network.value)
                return ConfirmationOutcome.failed

        remaining = deadline - clock.time()
        if remaining <= 0:
            logger.info("Transaction %s not confirmed within %.0fs, still pending", tx_id, timeout)
            return ConfirmationOutcome.timed_out

        if clock.sleep(min(poll_interval, remaining), cancel_event):
            logger.info("Confirmation wait for %s on %s cancelled", tx_id, handle.network.value)
            return ConfirmationOutcome.timed_out
