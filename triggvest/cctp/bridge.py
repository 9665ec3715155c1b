"""Cross-chain USDC transfer orchestrator.

:py:class:`TransferOrchestrator` moves USDC between two supported networks:

- Same network: one ERC-20 ``transfer()``
- Different networks: a CCTP V2 burn and mint in four stages

  1. **Approval**: ``approve()`` TokenMessengerV2 on the source USDC,
     skipped when the allowance already covers the amount
  2. **Burn**: ``depositForBurn()`` on the source chain
  3. **Attestation**: poll Circle's Iris API for the signed burn message
  4. **Mint**: ``receiveMessage()`` on the destination chain

The transfer state is checkpointed to a
:py:class:`~triggvest.cctp.status.TransferStatusStore` after every
submission and every confirmed step. Confirmation and attestation waits
are bounded; running out of time is not a failure but a ``pending``
result, and :py:meth:`TransferOrchestrator.resume_transfer` continues
from the persisted phase without ever resubmitting an earlier stage.

Example::

    from triggvest.cctp.bridge import TransferOrchestrator
    from triggvest.cctp.monitor import IrisAttestationService
    from triggvest.cctp.transfer import TransferRequest

    orchestrator = TransferOrchestrator(
        provider=wallet_provider,
        attestation_service=IrisAttestationService.for_network(SupportedNetwork.eth_sepolia),
    )

    request = TransferRequest.create(
        source_chain="ETH-SEPOLIA",
        destination_chain="BASE-SEPOLIA",
        amount="10",
        source_wallet_ref="wallet-1",
        destination_address="0x...",
        speed="fast",
        correlation_id="strategy-42-run-7",
    )
    result = orchestrator.start_transfer(request)
    if result.status == TransferResultStatus.pending:
        # Hours later, or in another process sharing the state file
        result = orchestrator.resume_transfer("strategy-42-run-7")

Running many transfers in parallel threads, with a progress bar::

    results = orchestrator.start_transfers(requests, max_workers=4, progress=True)
"""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from decimal import Decimal
from typing import Callable, Iterable

from tqdm_loggable.auto import tqdm

from triggvest.cctp.approval import ApprovalStage
from triggvest.cctp.attestation import AttestationPoller
from triggvest.cctp.burn import BurnStage
from triggvest.cctp.cache import BalanceCache
from triggvest.cctp.config import BridgeConfig
from triggvest.cctp.constants import SupportedNetwork
from triggvest.cctp.direct import DirectTransferStage
from triggvest.cctp.errors import (
    AttestationNotFound,
    AttestationTimeout,
    BridgeError,
    InsufficientBalanceError,
    MintFailure,
    UnknownTransferError,
    ValidationError,
)
from triggvest.cctp.provider import AttestationService, WalletProvider
from triggvest.cctp.receive import MintStage
from triggvest.cctp.retry import call_with_retry
from triggvest.cctp.stage import KeyedLocks
from triggvest.cctp.state import (
    AttestationOutcome,
    StageOutcome,
    StageResult,
    TransferPhase,
    TransferResult,
    TransferResultStatus,
    TransferRoute,
    TransferState,
)
from triggvest.cctp.status import TransferStatusStore, create_transfer_status_store
from triggvest.cctp.transfer import TransferRequest
from triggvest.utils import SYSTEM_CLOCK, Clock

logger = logging.getLogger(__name__)

#: Progress callback ``(correlation id, new phase)``
PhaseListener = Callable[[str, TransferPhase], None]

#: Phases a bridge transfer steps through, for progress bars
BRIDGE_PROGRESS_PHASES = [
    TransferPhase.created,
    TransferPhase.approval_submitted,
    TransferPhase.approval_confirmed,
    TransferPhase.burn_submitted,
    TransferPhase.burn_confirmed,
    TransferPhase.attestation_pending,
    TransferPhase.attestation_received,
    TransferPhase.mint_submitted,
    TransferPhase.completed,
]


def get_supported_routes(testnet: bool | None = None) -> list[tuple[SupportedNetwork, SupportedNetwork]]:
    """Every ordered pair of distinct networks we can bridge between.

    Testnets bridge only to testnets and mainnets only to mainnets.

    :param testnet:
        Only testnet (``True``) or mainnet (``False``) routes. ``None`` for both.
    """
    routes = []
    for source in SupportedNetwork:
        if testnet is not None and source.is_testnet != testnet:
            continue
        for destination in SupportedNetwork:
            if source != destination and source.is_testnet == destination.is_testnet:
                routes.append((source, destination))
    return routes


class TransferOrchestrator:
    """Route, sequence and resume USDC transfers.

    Thread safe. Distinct transfers progress independently; calls for the
    same correlation id are serialised, and submissions from the same
    wallet are serialised to keep the account nonce sane.
    """

    def __init__(
        self,
        provider: WalletProvider,
        attestation_service: AttestationService,
        store: TransferStatusStore | None = None,
        config: BridgeConfig | None = None,
        clock: Clock = SYSTEM_CLOCK,
        balance_cache: BalanceCache | None = None,
    ):
        """
        :param store:
            Where transfer state is checkpointed. Defaults to the JSON file
            in ``config.state_file``, or in-memory.

        :param clock:
            All waits go through this clock. Tests pass a fake one.
        """
        if config is None:
            config = BridgeConfig()

        self.provider = provider
        self.config = config
        self.clock = clock
        self.store = store if store is not None else create_transfer_status_store(config.state_file)
        self.balance_cache = balance_cache or BalanceCache(ttl=config.balance_cache_ttl, clock=clock)

        #: Set by :py:meth:`cancel`: waits stop at the next wake-up and no new transaction is submitted
        self.cancel_event = threading.Event()

        self.wallet_locks = KeyedLocks()
        self.transfer_locks = KeyedLocks()

        stage_args = dict(provider=provider, config=config, clock=clock, wallet_locks=self.wallet_locks, balance_cache=self.balance_cache)
        self.approval_stage = ApprovalStage(**stage_args)
        self.burn_stage = BurnStage(**stage_args)
        self.mint_stage = MintStage(**stage_args)
        self.direct_stage = DirectTransferStage(**stage_args)
        self.attestation_poller = AttestationPoller(attestation_service, config, clock)

    def __repr__(self):
        return f"<TransferOrchestrator store={self.store}>"

    def cancel(self):
        """Interrupt all waits and hold back new submissions.

        Transfers report ``pending`` and can be resumed after :py:meth:`reset_cancel`.
        """
        logger.info("Cancelling all transfer waits")
        self.cancel_event.set()

    def reset_cancel(self):
        """Allow transfers to submit and wait again after :py:meth:`cancel`."""
        logger.info("Transfer waits no longer cancelled")
        self.cancel_event.clear()

    @property
    def is_cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def get_supported_routes(self) -> list[tuple[SupportedNetwork, SupportedNetwork]]:
        return get_supported_routes()

    def check_balance(self, request: TransferRequest) -> Decimal:
        """Pre-flight check that the source wallet holds the amount.

        :return:
            Available USDC

        :raise InsufficientBalanceError:
            With the shortfall
        """
        key = (request.source_wallet_ref, request.source_chain, "USDC")
        available = self.balance_cache.get_or_fetch(
            key,
            lambda: call_with_retry(
                lambda: self.provider.query_token_balance(request.source_wallet_ref, request.source_chain, "USDC"),
                f"Query USDC balance of {request.source_wallet_ref} on {request.source_chain.value}",
                retry_config=self.config.retry,
                clock=self.clock,
            ),
        )
        if available < request.amount:
            raise InsufficientBalanceError("USDC", available, request.amount, network=request.source_chain.value)
        return available

    def start_transfer(
        self,
        request: TransferRequest,
        on_phase_change: PhaseListener | None = None,
        cancel_event: threading.Event | None = None,
    ) -> TransferResult:
        """Accept a transfer and drive it as far as the wait budgets allow.

        Starting a correlation id that already exists resumes it instead.

        :raise ValidationError:
            The correlation id was used for a different request

        :raise InsufficientBalanceError:
            The source wallet cannot cover the amount. Nothing was submitted.
        """
        assert isinstance(request, TransferRequest), f"Expected TransferRequest, got {type(request)}"
        correlation_id = request.correlation_id

        with self.transfer_locks.get(correlation_id):
            existing = self.store.get(correlation_id)
            if existing is None:
                self.check_balance(request)
                route = TransferRoute.direct if request.is_same_chain else TransferRoute.bridge
                state, created = self.store.create(TransferState(request=request, route=route))
                if created:
                    logger.info(
                        "Transfer %s created: %s USDC %s -> %s (%s, %s route)",
                        correlation_id,
                        request.amount,
                        request.source_chain.value,
                        request.destination_chain.value,
                        request.speed.value,
                        route.value,
                    )
                    self._notify(state, on_phase_change)
            else:
                state = existing

            if state.request != request:
                raise ValidationError(f"Correlation id {correlation_id} is already used by a different transfer")

            if existing is not None:
                logger.info("Transfer %s already exists at phase %s, resuming", correlation_id, state.phase.value)

            return self._advance(state, on_phase_change, cancel_event or self.cancel_event)

    def resume_transfer(
        self,
        correlation_id: str,
        on_phase_change: PhaseListener | None = None,
        cancel_event: threading.Event | None = None,
    ) -> TransferResult:
        """Continue a transfer from its persisted phase.

        Terminal transfers return their result without touching any chain.

        :raise UnknownTransferError:
            No such correlation id
        """
        with self.transfer_locks.get(correlation_id):
            state = self.store.get(correlation_id)
            if state is None:
                raise UnknownTransferError(f"No transfer {correlation_id}")
            logger.info("Resuming transfer %s at phase %s", correlation_id, state.phase.value)
            return self._advance(state, on_phase_change, cancel_event or self.cancel_event)

    def get_transfer_status(self, correlation_id: str) -> TransferState:
        """Read-only snapshot of a transfer.

        :raise UnknownTransferError:
            No such correlation id
        """
        state = self.store.get(correlation_id)
        if state is None:
            raise UnknownTransferError(f"No transfer {correlation_id}")
        return state

    def list_transfers(self, include_terminal: bool = False) -> list[TransferState]:
        return self.store.list(include_terminal=include_terminal)

    def resume_outstanding(self, max_workers: int = 4, progress: bool = False) -> list[TransferResult]:
        """Resume every non-terminal transfer, e.g. after a restart."""
        outstanding = self.list_transfers()
        logger.info("Resuming %d outstanding transfers", len(outstanding))
        return self._run_parallel(
            [s.request for s in outstanding],
            lambda request, listener: self.resume_transfer(request.correlation_id, on_phase_change=listener),
            max_workers=max_workers,
            progress=progress,
            desc="Resume transfers",
        )

    def start_transfers(self, requests: Iterable[TransferRequest], max_workers: int = 4, progress: bool = False) -> list[TransferResult]:
        """Run independent transfers in parallel threads.

        A transfer refused up front, e.g. for insufficient balance, is
        reported as a ``failed`` result instead of aborting the batch.

        :param progress:
            Show a ``tqdm`` progress bar tracking per-transfer phase transitions.

        :return:
            Results in input order
        """
        return self._run_parallel(
            list(requests),
            lambda request, listener: self.start_transfer(request, on_phase_change=listener),
            max_workers=max_workers,
            progress=progress,
            desc="CCTP transfers",
        )

    def _run_parallel(
        self,
        requests: list[TransferRequest],
        func: Callable[[TransferRequest, PhaseListener], TransferResult],
        max_workers: int,
        progress: bool,
        desc: str,
    ) -> list[TransferResult]:
        if not requests:
            return []

        ids = [r.correlation_id for r in requests]
        assert len(set(ids)) == len(ids), f"Duplicate correlation ids in batch: {ids}"

        n_phases = len(BRIDGE_PROGRESS_PHASES)
        transfer_phases: dict[str, TransferPhase] = {cid: TransferPhase.created for cid in ids}
        lock = threading.Lock()

        progress_bar = tqdm(
            total=len(requests) * (n_phases - 1),
            desc=desc,
            unit="phase",
            disable=not progress,
        )

        def _progress_ordinal(phase: TransferPhase) -> int:
            if phase in (TransferPhase.completed, TransferPhase.failed):
                return n_phases - 1
            if phase == TransferPhase.direct_submitted:
                return (n_phases - 1) // 2
            return BRIDGE_PROGRESS_PHASES.index(phase)

        def _update_phase(correlation_id: str, phase: TransferPhase):
            """Thread-safe progress bar update."""
            with lock:
                old_phase = transfer_phases[correlation_id]
                transfer_phases[correlation_id] = phase
                advance = max(0, _progress_ordinal(phase) - _progress_ordinal(old_phase))
                if advance > 0:
                    progress_bar.update(advance)
                done = sum(1 for p in transfer_phases.values() if p.is_terminal)
                progress_bar.set_postfix_str(f"done: {done}/{len(requests)}")

        def _run(request: TransferRequest) -> TransferResult:
            threading.current_thread().name = f"transfer-{request.correlation_id}"
            try:
                result = func(request, _update_phase)
            except BridgeError as e:
                logger.error("Transfer %s refused: %s", request.correlation_id, e)
                result = TransferResult(
                    status=TransferResultStatus.failed,
                    correlation_id=request.correlation_id,
                    phase=TransferPhase.created,
                    message=f"Transfer refused: {e}",
                    next_step=getattr(e, "remediation", None),
                    error=str(e),
                )
            _update_phase(request.correlation_id, result.phase)
            return result

        results: dict[str, TransferResult] = {}
        try:
            with ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="transfer") as executor:
                futures = {executor.submit(_run, request): request.correlation_id for request in requests}
                for future in as_completed(futures):
                    results[futures[future]] = future.result()
        finally:
            progress_bar.close()

        return [results[cid] for cid in ids]

    def _notify(self, state: TransferState, listener: PhaseListener | None):
        if listener is not None:
            listener(state.correlation_id, state.phase)

    def _advance(self, state: TransferState, listener: PhaseListener | None, cancel_event: threading.Event) -> TransferResult:
        """Run the remaining stages of a transfer, strictly in order."""

        def checkpoint(s: TransferState):
            self.store.save(s)
            self._notify(s, listener)

        if state.phase.is_terminal:
            return self._final_result(state)

        if state.route == TransferRoute.direct:
            result = self.direct_stage.run(state, checkpoint, cancel_event)
            return self._stage_result(state, result, "Transfer")

        for stage in (self.approval_stage, self.burn_stage):
            result = stage.run(state, checkpoint, cancel_event)
            if not result.is_done:
                return self._stage_result(state, result, stage.stage.capitalize())

        if state.phase in (TransferPhase.burn_confirmed, TransferPhase.attestation_pending):
            pending = self._await_attestation(state, checkpoint, cancel_event)
            if pending is not None:
                return pending

        result = self.mint_stage.run(state, checkpoint, cancel_event)
        return self._stage_result(state, result, "Mint")

    def _await_attestation(self, state: TransferState, checkpoint: Callable[[TransferState], None], cancel_event: threading.Event) -> TransferResult | None:
        """Poll for the attestation.

        :return:
            ``None`` when the attestation was received and the mint can go ahead
        """
        assert state.burn_tx_hash, f"Transfer {state.correlation_id} has no burn hash"
        request = state.request

        if state.phase == TransferPhase.burn_confirmed:
            state.phase = TransferPhase.attestation_pending
            state.touch()
            checkpoint(state)

        result = self.attestation_poller.poll(
            request.source_chain.domain,
            state.burn_tx_hash,
            request.speed,
            cancel_event=cancel_event,
            testnet=request.source_chain.is_testnet,
        )

        if result.outcome == AttestationOutcome.received:
            state.attestation = result.attestation
            state.phase = TransferPhase.attestation_received
            state.record_error(None)
            state.touch()
            checkpoint(state)
            return None

        elif result.outcome == AttestationOutcome.not_found:
            error = AttestationNotFound(f"Attestation service does not know burn {state.burn_tx_hash} on domain {request.source_chain.domain}")
            state.phase = TransferPhase.failed
            state.record_error(error)
            state.touch()
            checkpoint(state)
            logger.error("Transfer %s: %s", state.correlation_id, error)
            return TransferResult.from_state(
                state,
                TransferResultStatus.failed,
                f"Burn {state.burn_tx_hash} was not recognised by the attestation service",
                next_step="Check the burn transaction and source domain. The burned USDC is not recoverable by resuming.",
            )

        else:
            tier = self.config.get_attestation_tier(request.speed)
            error = AttestationTimeout(f"Attestation for burn {state.burn_tx_hash} not ready within {tier.timeout:.0f}s (last status: {result.detail})")
            state.record_error(error)
            state.touch()
            checkpoint(state)
            return TransferResult.from_state(
                state,
                TransferResultStatus.pending,
                "USDC burned, waiting for Circle's attestation",
                next_step=f"Call resume_transfer('{state.correlation_id}') later to fetch the attestation and mint",
            )

    def _stage_result(self, state: TransferState, result: StageResult, what: str) -> TransferResult:
        cid = state.correlation_id

        if result.outcome == StageOutcome.pending and result.handle is None:
            return TransferResult.from_state(
                state,
                TransferResultStatus.pending,
                f"Cancelled before the {what.lower()} transaction was submitted",
                next_step=f"Call resume_transfer('{cid}') once the orchestrator is no longer cancelled",
            )

        elif result.outcome == StageOutcome.pending:
            return TransferResult.from_state(
                state,
                TransferResultStatus.pending,
                f"{what} transaction submitted, waiting for confirmation",
                next_step=f"Call resume_transfer('{cid}') later to continue",
            )

        elif result.outcome == StageOutcome.failed:
            error = result.error
            if isinstance(error, MintFailure):
                next_step = f"USDC is burned and attested. Fix the destination wallet and call resume_transfer('{cid}') to retry the mint"
            else:
                next_step = getattr(error, "remediation", None)
            return TransferResult.from_state(state, TransferResultStatus.failed, f"{what} failed: {error}", next_step=next_step)

        assert state.phase == TransferPhase.completed, f"Transfer {cid} stopped at {state.phase.value} after {result.outcome.value}"
        return self._final_result(state)

    def _final_result(self, state: TransferState) -> TransferResult:
        request = state.request
        if state.phase == TransferPhase.completed:
            return TransferResult.from_state(
                state,
                TransferResultStatus.completed,
                f"Transferred {request.amount} USDC from {request.source_chain.value} to {request.destination_address} on {request.destination_chain.value}",
            )
        assert state.phase == TransferPhase.failed, f"Not terminal: {state.phase}"
        return TransferResult.from_state(state, TransferResultStatus.failed, f"Transfer failed: {state.last_error}")
