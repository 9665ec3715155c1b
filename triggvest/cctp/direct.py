"""Same-chain USDC transfer.

When source and destination are the same network there is nothing to
bridge: a plain ERC-20 ``transfer()`` from the source wallet does it.
"""

import logging

from triggvest.cctp.stage import BridgeStage
from triggvest.cctp.state import ChainTransactionHandle, TransferPhase, TransferState

logger = logging.getLogger(__name__)


class DirectTransferStage(BridgeStage):
    """Submit one ``USDC.transfer(destination, amount)`` and wait for it."""

    stage = "direct"
    entry_phase = TransferPhase.created
    submitted_phase = TransferPhase.direct_submitted
    confirmed_phase = TransferPhase.completed

    def submit(self, state: TransferState) -> ChainTransactionHandle:
        request = state.request
        assert request.is_same_chain, f"Not a same-chain transfer: {request.source_chain.value} -> {request.destination_chain.value}"
        logger.info(
            "Transfer %s: sending %s USDC to %s on %s",
            state.correlation_id,
            request.amount,
            request.destination_address,
            request.source_chain.value,
        )
        return self.provider.submit_token_transfer(
            request.source_wallet_ref,
            request.source_chain,
            request.source_chain.deployment.usdc,
            request.destination_address,
            request.amount_raw,
            self.config.direct_fee_level,
        )
