"""Burn USDC on the source chain with ``depositForBurn()``.

This is the irreversible step of a bridge transfer. Once the burn
confirms, the funds only come back by minting on the destination chain,
so a transfer must never burn twice.
"""

import logging

from triggvest.cctp.stage import BridgeStage
from triggvest.cctp.state import ChainTransactionHandle, TransferPhase, TransferState
from triggvest.cctp.transfer import prepare_deposit_for_burn

logger = logging.getLogger(__name__)


class BurnStage(BridgeStage):
    """Submit ``TokenMessengerV2.depositForBurn()``."""

    stage = "burn"
    entry_phase = TransferPhase.approval_confirmed
    submitted_phase = TransferPhase.burn_submitted
    confirmed_phase = TransferPhase.burn_confirmed

    def submit(self, state: TransferState) -> ChainTransactionHandle:
        request = state.request
        call = prepare_deposit_for_burn(request, fast_max_fee=self.config.fast_max_fee)
        _, domain, _, _, _, max_fee, finality = call.parameters
        logger.info(
            "Transfer %s: burning %s USDC on %s for domain %d (%s), max fee %d, finality %d",
            state.correlation_id,
            request.amount,
            request.source_chain.value,
            domain,
            request.speed.value,
            max_fee,
            finality,
        )
        return self.provider.submit_contract_call(
            request.source_wallet_ref,
            request.source_chain,
            call.contract_address,
            call.function_signature,
            call.parameters,
            self.config.fee_level,
        )

    def on_confirmed(self, state: TransferState, handle: ChainTransactionHandle):
        # Attestation lookup is keyed by the chain hash, not the provider id
        if handle.chain_tx_hash:
            state.burn_tx_hash = handle.chain_tx_hash
        else:
            logger.warning("Burn %s confirmed without a chain hash, using the transaction id", handle.transaction_id)
            state.burn_tx_hash = handle.transaction_id
