"""Approve TokenMessengerV2 to burn the source wallet's USDC."""

import logging

from triggvest.cctp.errors import ProviderError
from triggvest.cctp.retry import ErrorClass, call_with_retry, classify_error
from triggvest.cctp.stage import BridgeStage, Checkpoint
from triggvest.cctp.state import ChainTransactionHandle, StageOutcome, StageResult, TransferPhase, TransferState
from triggvest.cctp.transfer import prepare_approve_for_burn

logger = logging.getLogger(__name__)


class ApprovalStage(BridgeStage):
    """Submit ``approve(tokenMessenger, amount)`` on the source USDC.

    Skipped when the wallet already has enough allowance.
    """

    stage = "approval"
    entry_phase = TransferPhase.created
    submitted_phase = TransferPhase.approval_submitted
    confirmed_phase = TransferPhase.approval_confirmed

    def query_allowance(self, state: TransferState) -> int | None:
        """Current allowance of TokenMessengerV2, or ``None`` if the provider could not tell."""
        request = state.request
        deployment = request.source_chain.deployment
        try:
            return call_with_retry(
                lambda: self.provider.query_allowance(request.source_wallet_ref, request.source_chain, deployment.usdc, deployment.token_messenger),
                f"Query USDC allowance of {request.source_wallet_ref} on {request.source_chain.value}",
                retry_config=self.config.retry,
                clock=self.clock,
            )
        except ProviderError as e:
            logger.warning("Could not check allowance for %s, approving anyway: %s", state.correlation_id, e)
            return None
        except Exception as e:
            if classify_error(e) == ErrorClass.terminal:
                raise
            logger.warning("Could not check allowance for %s, approving anyway: %s", state.correlation_id, e)
            return None

    def before_submit(self, state: TransferState, checkpoint: Checkpoint) -> StageResult | None:
        if not self.config.check_allowance:
            return None

        allowance = self.query_allowance(state)
        if allowance is not None and allowance >= state.request.amount_raw:
            logger.info(
                "Transfer %s: existing allowance %d covers %d, skipping approval",
                state.correlation_id,
                allowance,
                state.request.amount_raw,
            )
            state.phase = self.confirmed_phase
            state.touch()
            checkpoint(state)
            return StageResult(StageOutcome.skipped)

        return None

    def submit(self, state: TransferState) -> ChainTransactionHandle:
        request = state.request
        call = prepare_approve_for_burn(request)
        logger.info(
            "Transfer %s: approving %s USDC for TokenMessengerV2 on %s",
            state.correlation_id,
            request.amount,
            request.source_chain.value,
        )
        return self.provider.submit_contract_call(
            request.source_wallet_ref,
            request.source_chain,
            call.contract_address,
            call.function_signature,
            call.parameters,
            self.config.fee_level,
        )
