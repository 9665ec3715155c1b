"""Common submit-once, then await, logic of the bridge stages.

Every chain touching stage follows the same pattern:

1. If the transfer is already past the stage, do nothing
2. If the stage transaction was submitted earlier, re-await the existing handle
3. Otherwise submit exactly one transaction, attach its handle
   to the transfer state and checkpoint before waiting
4. Wait for confirmation within the configured budget

The per-stage differences (which contract call, what happens on
confirmation) live in the subclasses.
"""

import logging
import threading
from typing import Callable

from triggvest.cctp.cache import BalanceCache
from triggvest.cctp.config import BridgeConfig
from triggvest.cctp.confirmation import ConfirmationOutcome, wait_for_confirmation
from triggvest.cctp.errors import BridgeError, BroadcastUncertainError, ConfirmationTimeout, ProviderError
from triggvest.cctp.provider import WalletProvider
from triggvest.cctp.state import ChainTransactionHandle, StageOutcome, StageResult, TransferPhase, TransferState
from triggvest.utils import SYSTEM_CLOCK, Clock, shorten_hex

logger = logging.getLogger(__name__)

#: Persist a transfer state. Called after every submission and confirmed step.
Checkpoint = Callable[[TransferState], None]


class KeyedLocks:
    """One lock per key, e.g. per wallet reference.

    Transfers from the same wallet must not submit concurrently,
    or they race on the account nonce.
    """

    def __init__(self):
        self._locks: dict[str, threading.Lock] = {}
        self._guard = threading.Lock()

    def get(self, key: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.Lock()
            return lock


class BridgeStage:
    """Base class of a stage that submits one transaction and waits for it."""

    #: ``approval``, ``burn``, ``mint`` or ``direct``, see :py:meth:`TransferState.assign_handle`
    stage: str

    #: Phase the transfer must be in before we submit
    entry_phase: TransferPhase

    #: Phase after the submission
    submitted_phase: TransferPhase

    #: Phase after the confirmation
    confirmed_phase: TransferPhase

    def __init__(
        self,
        provider: WalletProvider,
        config: BridgeConfig,
        clock: Clock = SYSTEM_CLOCK,
        wallet_locks: KeyedLocks | None = None,
        balance_cache: BalanceCache | None = None,
    ):
        self.provider = provider
        self.config = config
        self.clock = clock
        self.wallet_locks = wallet_locks or KeyedLocks()
        self.balance_cache = balance_cache

    def get_handle(self, state: TransferState) -> ChainTransactionHandle | None:
        return getattr(state, f"{self.stage}_handle")

    def get_wallet_ref(self, state: TransferState) -> str:
        """Wallet signing the stage transaction."""
        return state.request.source_wallet_ref

    def submit(self, state: TransferState) -> ChainTransactionHandle:
        """Send the stage transaction through the provider."""
        raise NotImplementedError()

    def before_submit(self, state: TransferState, checkpoint: Checkpoint) -> StageResult | None:
        """Hook to skip the submission. Return a result to stop here."""
        return None

    def on_confirmed(self, state: TransferState, handle: ChainTransactionHandle):
        """Hook to record what the confirmed transaction produced."""

    def run(self, state: TransferState, checkpoint: Checkpoint, cancel_event: threading.Event | None = None) -> StageResult:
        """Advance the transfer through this stage.

        :return:
            Tagged result. ``pending`` means resume later.
        """
        assert not state.phase.is_terminal, f"Transfer {state.correlation_id} is already {state.phase.value}"

        if state.phase.is_at_least(self.confirmed_phase):
            return StageResult(StageOutcome.confirmed, handle=self.get_handle(state))

        if state.phase == self.submitted_phase:
            handle = self.get_handle(state)
            assert handle is not None, f"Transfer {state.correlation_id} is {state.phase.value} without a {self.stage} handle"
            logger.info("Transfer %s: resuming wait for %s transaction %s", state.correlation_id, self.stage, shorten_hex(handle.transaction_id))
        else:
            assert state.phase == self.entry_phase, f"Transfer {state.correlation_id}: cannot run {self.stage} stage in phase {state.phase.value}"

            if cancel_event is not None and cancel_event.is_set():
                logger.info("Transfer %s: cancelled, not submitting %s", state.correlation_id, self.stage)
                return StageResult(StageOutcome.pending)

            result = self.before_submit(state, checkpoint)
            if result is not None:
                return result

            handle, error = self.submit_once(state, checkpoint)
            if handle is None:
                return StageResult(StageOutcome.failed, error=error)

        return self.await_handle(state, handle, checkpoint, cancel_event)

    def submit_once(self, state: TransferState, checkpoint: Checkpoint) -> tuple[ChainTransactionHandle | None, BridgeError | None]:
        """Submit the stage transaction and checkpoint the new handle.

        A provider refusal moves the transfer to ``failed``,
        unless :py:meth:`on_submit_refused` is overridden.
        A broadcast that may have reached the node keeps its handle,
        and the confirmation wait decides what happened.

        :return:
            Tuple (handle, None), or (None, error) if the provider refused the submission
        """
        wallet_ref = self.get_wallet_ref(state)
        uncertain = None
        try:
            with self.wallet_locks.get(wallet_ref):
                handle = self.submit(state)
        except BroadcastUncertainError as e:
            logger.warning("Transfer %s: %s broadcast outcome unknown, watching %s: %s", state.correlation_id, self.stage, e.handle.transaction_id, e)
            handle = e.handle
            uncertain = e
        except ProviderError as e:
            logger.error("Transfer %s: %s submission refused: %s", state.correlation_id, self.stage, e)
            error = self.on_submit_refused(state, e)
            checkpoint(state)
            return None, error
        finally:
            if self.balance_cache is not None:
                self.balance_cache.invalidate(wallet_ref)

        state.assign_handle(self.stage, handle)
        state.phase = self.submitted_phase
        state.record_error(uncertain)
        state.touch()
        checkpoint(state)
        logger.info("Transfer %s: %s submitted as %s on %s", state.correlation_id, self.stage, shorten_hex(handle.transaction_id), handle.network.value)
        return handle, None

    def on_submit_refused(self, state: TransferState, error: ProviderError) -> BridgeError:
        """Record a refused submission.

        :return:
            Error reported in the stage result
        """
        state.phase = TransferPhase.failed
        state.record_error(error)
        state.touch()
        return error

    def await_handle(
        self,
        state: TransferState,
        handle: ChainTransactionHandle,
        checkpoint: Checkpoint,
        cancel_event: threading.Event | None = None,
    ) -> StageResult:
        outcome = wait_for_confirmation(
            self.provider,
            handle,
            poll_interval=self.config.confirmation_poll_interval,
            timeout=self.config.confirmation_timeout,
            clock=self.clock,
            retry_config=self.config.retry,
            cancel_event=cancel_event,
        )

        if outcome == ConfirmationOutcome.confirmed:
            self.on_confirmed(state, handle)
            state.phase = self.confirmed_phase
            state.record_error(None)
            state.touch()
            checkpoint(state)
            return StageResult(StageOutcome.confirmed, handle=handle)

        elif outcome == ConfirmationOutcome.failed:
            error = ProviderError(f"{self.stage.capitalize()} transaction {handle.transaction_id} failed on {handle.network.value}")
            return self.on_transaction_failed(state, handle, error, checkpoint)

        else:
            error = ConfirmationTimeout(f"{self.stage.capitalize()} transaction {handle.transaction_id} not confirmed within {self.config.confirmation_timeout:.0f}s")
            state.record_error(error)
            state.touch()
            checkpoint(state)
            return StageResult(StageOutcome.pending, handle=handle, error=error)

    def on_transaction_failed(self, state: TransferState, handle: ChainTransactionHandle, error: BridgeError, checkpoint: Checkpoint) -> StageResult:
        """The stage transaction reverted. Terminal unless overridden."""
        logger.error("Transfer %s: %s", state.correlation_id, error)
        state.phase = TransferPhase.failed
        state.record_error(error)
        state.touch()
        checkpoint(state)
        return StageResult(StageOutcome.failed, handle=handle, error=error)
