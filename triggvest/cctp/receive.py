"""Mint USDC on the destination chain with ``receiveMessage()``.

Anyone can relay an attested message: the destination caller of our burns
is the zero address. The mint is signed by the destination wallet reference
of the transfer, which defaults to the source wallet.
"""

import logging
import threading

from triggvest.cctp.constants import SupportedNetwork
from triggvest.cctp.errors import BridgeError, BroadcastUncertainError, MintFailure, ProviderError
from triggvest.cctp.stage import BridgeStage, Checkpoint
from triggvest.cctp.state import (
    AttestationRecord,
    ChainTransactionHandle,
    StageOutcome,
    StageResult,
    TransferPhase,
    TransferState,
)
from triggvest.cctp.transfer import ContractCall

logger = logging.getLogger(__name__)

#: MessageTransmitterV2.receiveMessage
RECEIVE_MESSAGE_SIGNATURE = "receiveMessage(bytes,bytes)"


def prepare_receive_message(attestation: AttestationRecord, destination: SupportedNetwork) -> ContractCall:
    """Build the ``receiveMessage(message, attestation)`` call on the destination MessageTransmitterV2."""
    assert attestation.message, "Attestation message missing"
    assert attestation.signature, "Attestation signature missing"
    return ContractCall(
        contract_address=destination.deployment.message_transmitter,
        function_signature=RECEIVE_MESSAGE_SIGNATURE,
        parameters=(attestation.message, attestation.signature),
    )


class MintStage(BridgeStage):
    """Relay the attestation to the destination chain.

    Unlike the source chain stages a failed mint is not terminal:
    the attestation stays valid, so the transfer stays at
    ``attestation_received`` and the mint can be retried.
    A mint that reverted on-chain is resubmitted automatically,
    up to ``max_mint_attempts`` transactions in total.
    """

    stage = "mint"
    entry_phase = TransferPhase.attestation_received
    submitted_phase = TransferPhase.mint_submitted
    confirmed_phase = TransferPhase.completed

    def get_wallet_ref(self, state: TransferState) -> str:
        return state.request.mint_wallet_ref

    def run(self, state: TransferState, checkpoint: Checkpoint, cancel_event: threading.Event | None = None) -> StageResult:
        while True:
            result = super().run(state, checkpoint, cancel_event)
            reverted = result.outcome == StageOutcome.failed and result.handle is not None
            if reverted and state.mint_attempts < self.config.max_mint_attempts:
                logger.warning(
                    "Transfer %s: mint reverted, resubmitting (attempt %d/%d)",
                    state.correlation_id,
                    state.mint_attempts + 1,
                    self.config.max_mint_attempts,
                )
                continue
            return result

    def before_submit(self, state: TransferState, checkpoint: Checkpoint) -> StageResult | None:
        assert state.attestation is not None, f"Transfer {state.correlation_id} has no attestation to mint with"
        if state.mint_attempts >= self.config.max_mint_attempts:
            error = MintFailure(f"Mint failed {state.mint_attempts} times, giving up. Relay receiveMessage() manually with the stored attestation.")
            state.record_error(error)
            state.touch()
            checkpoint(state)
            return StageResult(StageOutcome.failed, error=error)
        return None

    def submit(self, state: TransferState) -> ChainTransactionHandle:
        request = state.request
        call = prepare_receive_message(state.attestation, request.destination_chain)
        logger.info(
            "Transfer %s: minting %s USDC on %s for %s",
            state.correlation_id,
            request.amount,
            request.destination_chain.value,
            request.destination_address,
        )
        try:
            handle = self.provider.submit_contract_call(
                request.mint_wallet_ref,
                request.destination_chain,
                call.contract_address,
                call.function_signature,
                call.parameters,
                self.config.fee_level,
            )
        except BroadcastUncertainError:
            state.mint_attempts += 1
            raise
        state.mint_attempts += 1
        return handle

    def on_submit_refused(self, state: TransferState, error: ProviderError) -> BridgeError:
        mint_error = MintFailure(f"Mint submission on {state.request.destination_chain.value} refused: {error}")
        state.record_error(mint_error)
        state.touch()
        return mint_error

    def on_transaction_failed(self, state: TransferState, handle: ChainTransactionHandle, error: BridgeError, checkpoint: Checkpoint) -> StageResult:
        logger.error("Transfer %s: %s", state.correlation_id, error)
        mint_error = MintFailure(str(error))
        state.clear_failed_mint()
        state.phase = TransferPhase.attestation_received
        state.record_error(mint_error)
        state.touch()
        checkpoint(state)
        return StageResult(StageOutcome.failed, handle=handle, error=mint_error)
