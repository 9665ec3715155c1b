"""Transfer orchestration: routing, stage order, resume and failure handling.

All chains and Circle's attestation service are faked, see ``conftest.py``.
"""

import threading
from decimal import Decimal

import pytest

from triggvest.cctp.bridge import BRIDGE_PROGRESS_PHASES, TransferOrchestrator
from triggvest.cctp.constants import FeeLevel, SupportedNetwork
from triggvest.cctp.errors import InsufficientBalanceError, InsufficientGasError, ProviderError, UnknownTransferError, ValidationError
from triggvest.cctp.provider import AttestationStatus
from triggvest.cctp.state import TransactionState, TransferPhase, TransferResultStatus, TransferRoute
from triggvest.cctp.status import JSONFileTransferStatusStore


def test_direct_transfer(orchestrator, provider, make_request):
    """Same network transfers are one ERC-20 transfer at high priority."""
    request = make_request(destination_chain="ETH-SEPOLIA")

    result = orchestrator.start_transfer(request)

    assert result.status == TransferResultStatus.completed
    assert result.phase == TransferPhase.completed
    assert result.direct_tx_id == "tx-1"
    assert provider.function_names() == ["transfer"]

    submission = provider.submissions[0]
    assert submission.kind == "token_transfer"
    assert submission.fee_level == FeeLevel.high
    assert submission.parameters == (request.destination_address, 1_000_000)
    assert orchestrator.get_transfer_status(request.correlation_id).route == TransferRoute.direct


def test_bridge_stage_order(orchestrator, provider, make_request):
    """Each stage is submitted only after the previous one confirmed."""
    result = orchestrator.start_transfer(make_request())

    assert result.status == TransferResultStatus.completed
    assert provider.function_names() == ["approve", "depositForBurn", "receiveMessage"]
    assert [e[:2] for e in provider.events] == [
        ("submit", "approve"),
        ("status", "tx-1"),
        ("submit", "depositForBurn"),
        ("status", "tx-2"),
        ("submit", "receiveMessage"),
        ("status", "tx-3"),
    ]

    assert result.approval_tx_id == "tx-1"
    assert result.burn_tx_id == "tx-2"
    assert result.mint_tx_id == "tx-3"
    assert result.burn_tx_hash.startswith("0x")
    assert result.error is None

    mint = provider.submissions[2]
    assert mint.network == SupportedNetwork.base_sepolia
    assert mint.target == SupportedNetwork.base_sepolia.deployment.message_transmitter
    assert mint.parameters[0] == b"message:" + result.burn_tx_hash.encode()


def test_existing_allowance_skips_approval(orchestrator, provider, make_request):
    """No approve() when the allowance already covers the amount."""
    provider.allowance = 10**12

    result = orchestrator.start_transfer(make_request())

    assert result.status == TransferResultStatus.completed
    assert result.approval_tx_id is None
    assert provider.function_names() == ["depositForBurn", "receiveMessage"]


def test_phase_listener(orchestrator, make_request):
    """Listener sees every bridge phase once, in order."""
    seen = []
    orchestrator.start_transfer(make_request(), on_phase_change=lambda cid, phase: seen.append(phase))
    assert seen == BRIDGE_PROGRESS_PHASES


def test_resume_completed_is_noop(orchestrator, provider, make_request):
    """Resuming a finished transfer touches no chain."""
    orchestrator.start_transfer(make_request())
    submitted = len(provider.submissions)
    queries = provider.status_queries

    result = orchestrator.resume_transfer("transfer-1")

    assert result.status == TransferResultStatus.completed
    assert len(provider.submissions) == submitted
    assert provider.status_queries == queries


def test_start_is_idempotent(orchestrator, provider, make_request):
    """Starting the same correlation id twice submits nothing new."""
    orchestrator.start_transfer(make_request())
    result = orchestrator.start_transfer(make_request())

    assert result.status == TransferResultStatus.completed
    assert len(provider.submissions) == 3


def test_conflicting_correlation_id(orchestrator, make_request):
    """A correlation id cannot be reused for another transfer."""
    orchestrator.start_transfer(make_request())

    with pytest.raises(ValidationError):
        orchestrator.start_transfer(make_request(amount="2"))


def test_unknown_transfer(orchestrator):
    """Resume and status lookups need a known correlation id."""
    with pytest.raises(UnknownTransferError):
        orchestrator.resume_transfer("nope")

    with pytest.raises(UnknownTransferError):
        orchestrator.get_transfer_status("nope")


def test_insufficient_usdc(orchestrator, provider, make_request):
    """Pre-flight balance check refuses the transfer before anything is stored."""
    provider.balances[("wallet-1", SupportedNetwork.eth_sepolia, "USDC")] = Decimal("0.5")

    with pytest.raises(InsufficientBalanceError) as exc_info:
        orchestrator.start_transfer(make_request())

    assert exc_info.value.shortfall == Decimal("0.5")
    assert provider.submissions == []
    with pytest.raises(UnknownTransferError):
        orchestrator.get_transfer_status("transfer-1")


def test_approval_refused_for_gas(orchestrator, provider, make_request):
    """A refused approval fails the transfer and tells how much gas to add."""
    provider.refusals["approve"] = InsufficientGasError("ETH", Decimal("0.0001"), Decimal("0.001"), network="ETH-SEPOLIA")

    result = orchestrator.start_transfer(make_request())

    assert result.status == TransferResultStatus.failed
    assert result.phase == TransferPhase.failed
    assert result.next_step.startswith("Top up")
    assert provider.submissions == []

    state = orchestrator.get_transfer_status("transfer-1")
    assert state.last_error_type == "InsufficientGasError"

    # Failed transfers are not retried by resume
    assert orchestrator.resume_transfer("transfer-1").status == TransferResultStatus.failed
    assert provider.submissions == []


def test_burn_reverted(orchestrator, provider, make_request):
    """A reverted burn is terminal and nothing is minted."""
    provider.outcomes["depositForBurn"] = TransactionState.failed

    result = orchestrator.start_transfer(make_request())

    assert result.status == TransferResultStatus.failed
    assert result.phase == TransferPhase.failed
    assert "receiveMessage" not in provider.function_names()


def test_burn_timeout_then_resume(orchestrator, provider, make_request):
    """An unconfirmed burn is awaited again on resume, never resubmitted."""
    provider.pending_polls["depositForBurn"] = 10_000

    result = orchestrator.start_transfer(make_request())

    assert result.status == TransferResultStatus.pending
    assert result.phase == TransferPhase.burn_submitted
    assert result.burn_tx_id == "tx-2"
    assert "resume_transfer" in result.next_step
    assert orchestrator.get_transfer_status("transfer-1").last_error_type == "ConfirmationTimeout"

    provider.force_status("tx-2", TransactionState.confirmed)
    result = orchestrator.resume_transfer("transfer-1")

    assert result.status == TransferResultStatus.completed
    assert provider.function_names().count("depositForBurn") == 1
    assert provider.function_names().count("approve") == 1


def test_attestation_pending_then_resume(orchestrator, provider, attestation_service, make_request):
    """A slow attestation leaves the transfer resumable after the burn."""
    attestation_service.script = [AttestationStatus.pending]

    result = orchestrator.start_transfer(make_request())

    assert result.status == TransferResultStatus.pending
    assert result.phase == TransferPhase.attestation_pending
    assert provider.function_names() == ["approve", "depositForBurn"]
    assert orchestrator.get_transfer_status("transfer-1").last_error_type == "AttestationTimeout"

    attestation_service.script = [AttestationStatus.complete]
    result = orchestrator.resume_transfer("transfer-1")

    assert result.status == TransferResultStatus.completed
    assert provider.function_names() == ["approve", "depositForBurn", "receiveMessage"]


def test_attestation_not_found(orchestrator, provider, attestation_service, make_request):
    """An unknown burn is a terminal failure, not a pending wait."""
    attestation_service.script = [AttestationStatus.not_found]

    result = orchestrator.start_transfer(make_request())

    assert result.status == TransferResultStatus.failed
    assert result.phase == TransferPhase.failed
    assert "receiveMessage" not in provider.function_names()
    assert orchestrator.get_transfer_status("transfer-1").last_error_type == "AttestationNotFound"


def test_mint_pending_resumed_twice(orchestrator, provider, make_request):
    """A slow mint is awaited across resumes with a single submission."""
    provider.pending_polls["receiveMessage"] = 10_000

    result = orchestrator.start_transfer(make_request())
    assert result.status == TransferResultStatus.pending
    assert result.phase == TransferPhase.mint_submitted

    result = orchestrator.resume_transfer("transfer-1")
    assert result.status == TransferResultStatus.pending

    provider.force_status("tx-3", TransactionState.confirmed)
    result = orchestrator.resume_transfer("transfer-1")

    assert result.status == TransferResultStatus.completed
    assert provider.function_names().count("receiveMessage") == 1


def test_mint_reverted_then_confirmed(orchestrator, provider, make_request):
    """A reverted mint is resubmitted with the same attestation."""
    provider.outcomes["receiveMessage"] = [TransactionState.failed, TransactionState.confirmed]

    result = orchestrator.start_transfer(make_request())

    assert result.status == TransferResultStatus.completed
    assert provider.function_names() == ["approve", "depositForBurn", "receiveMessage", "receiveMessage"]
    assert result.mint_tx_id == "tx-4"
    assert orchestrator.get_transfer_status("transfer-1").mint_attempts == 2


def test_mint_attempts_capped(orchestrator, provider, config, make_request):
    """A mint that keeps reverting gives up after the configured attempts."""
    provider.outcomes["receiveMessage"] = TransactionState.failed

    result = orchestrator.start_transfer(make_request())

    assert result.status == TransferResultStatus.failed
    assert result.phase == TransferPhase.attestation_received
    assert provider.function_names().count("receiveMessage") == config.max_mint_attempts

    state = orchestrator.get_transfer_status("transfer-1")
    assert state.attestation is not None
    assert state.last_error_type == "MintFailure"

    result = orchestrator.resume_transfer("transfer-1")
    assert result.status == TransferResultStatus.failed
    assert provider.function_names().count("receiveMessage") == config.max_mint_attempts


def test_mint_refused_then_resumed(orchestrator, provider, make_request):
    """A refused mint keeps the attestation, resume mints without burning again."""
    provider.refusals["receiveMessage"] = ProviderError("destination wallet has no gas")

    result = orchestrator.start_transfer(make_request())

    assert result.status == TransferResultStatus.failed
    assert result.phase == TransferPhase.attestation_received
    assert "retry the mint" in result.next_step

    del provider.refusals["receiveMessage"]
    result = orchestrator.resume_transfer("transfer-1")

    assert result.status == TransferResultStatus.completed
    assert provider.function_names() == ["approve", "depositForBurn", "receiveMessage"]


def test_mint_by_destination_wallet(orchestrator, provider, make_request):
    """The mint is signed by the destination wallet reference when given."""
    orchestrator.start_transfer(make_request(destination_wallet_ref="wallet-2"))

    assert [s.wallet_ref for s in provider.submissions] == ["wallet-1", "wallet-1", "wallet-2"]


def test_cancelled_orchestrator_submits_nothing(orchestrator, provider, make_request):
    """After cancel() no transaction goes out until the cancel is reset."""
    orchestrator.cancel()
    assert orchestrator.is_cancelled

    result = orchestrator.start_transfer(make_request())

    assert result.status == TransferResultStatus.pending
    assert result.phase == TransferPhase.created
    assert provider.submissions == []

    orchestrator.reset_cancel()
    assert not orchestrator.is_cancelled

    result = orchestrator.resume_transfer("transfer-1")
    assert result.status == TransferResultStatus.completed
    assert provider.function_names() == ["approve", "depositForBurn", "receiveMessage"]


def test_cancelled_wait(orchestrator, provider, make_request):
    """Cancelling stops the wait after the submission, the transfer stays resumable."""
    cancel = threading.Event()

    def _cancel_after_approval(correlation_id, phase):
        if phase == TransferPhase.approval_submitted:
            cancel.set()

    result = orchestrator.start_transfer(make_request(), on_phase_change=_cancel_after_approval, cancel_event=cancel)

    assert result.status == TransferResultStatus.pending
    assert result.phase == TransferPhase.approval_submitted
    assert provider.function_names() == ["approve"]

    result = orchestrator.resume_transfer("transfer-1")
    assert result.status == TransferResultStatus.completed
    assert provider.function_names().count("approve") == 1


def test_burn_broadcast_outcome_unknown(orchestrator, provider, make_request):
    """A burn whose broadcast lost the connection is watched, never failed or resent."""
    provider.uncertain_broadcasts.add("depositForBurn")
    provider.pending_polls["depositForBurn"] = 10_000

    result = orchestrator.start_transfer(make_request())

    assert result.status == TransferResultStatus.pending
    assert result.phase == TransferPhase.burn_submitted
    assert result.burn_tx_id == "tx-2"

    provider.force_status("tx-2", TransactionState.confirmed)
    result = orchestrator.resume_transfer("transfer-1")

    assert result.status == TransferResultStatus.completed
    assert provider.function_names().count("depositForBurn") == 1


def test_mint_broadcast_outcome_unknown(orchestrator, provider, make_request):
    """An unclear mint broadcast still counts as a mint attempt."""
    provider.uncertain_broadcasts.add("receiveMessage")

    result = orchestrator.start_transfer(make_request())

    assert result.status == TransferResultStatus.completed
    assert orchestrator.get_transfer_status("transfer-1").mint_attempts == 1


@pytest.mark.timeout(30)
def test_parallel_transfers(orchestrator, provider, make_request):
    """Independent transfers run in parallel threads, results in input order."""
    requests = [
        make_request(correlation_id="a"),
        make_request(correlation_id="b", source_chain="ARB-SEPOLIA", destination_chain="OP-SEPOLIA"),
        make_request(correlation_id="c", destination_chain="ETH-SEPOLIA"),
        make_request(correlation_id="d", source_wallet_ref="wallet-2"),
    ]
    provider.balances[("wallet-2", SupportedNetwork.eth_sepolia, "USDC")] = Decimal(0)

    results = orchestrator.start_transfers(requests, max_workers=4)

    assert [r.correlation_id for r in results] == ["a", "b", "c", "d"]
    assert [r.status for r in results] == [
        TransferResultStatus.completed,
        TransferResultStatus.completed,
        TransferResultStatus.completed,
        TransferResultStatus.failed,
    ]
    assert results[3].next_step.startswith("Top up")
    assert len(provider.submissions) == 3 + 3 + 1


def test_resume_outstanding(orchestrator, provider, attestation_service, make_request):
    """Every unfinished transfer is picked up after a restart."""
    attestation_service.script = [AttestationStatus.pending]
    orchestrator.start_transfer(make_request(correlation_id="x"))
    orchestrator.start_transfer(make_request(correlation_id="y", destination_chain="ETH-SEPOLIA"))
    assert [s.correlation_id for s in orchestrator.list_transfers()] == ["x"]

    attestation_service.script = [AttestationStatus.complete]
    results = orchestrator.resume_outstanding()

    assert [r.status for r in results] == [TransferResultStatus.completed]
    assert orchestrator.list_transfers() == []
    assert len(orchestrator.list_transfers(include_terminal=True)) == 2


def test_resume_from_state_file(tmp_path, provider, attestation_service, config, clock, make_request):
    """A second orchestrator process resumes from the shared JSON state file."""
    path = tmp_path / "transfers.json"
    attestation_service.script = [AttestationStatus.pending]

    first = TransferOrchestrator(provider, attestation_service, store=JSONFileTransferStatusStore(path), config=config, clock=clock)
    assert first.start_transfer(make_request()).status == TransferResultStatus.pending

    attestation_service.script = [AttestationStatus.complete]
    second = TransferOrchestrator(provider, attestation_service, store=JSONFileTransferStatusStore(path), config=config, clock=clock)
    result = second.resume_transfer("transfer-1")

    assert result.status == TransferResultStatus.completed
    assert result.burn_tx_id == "tx-2"
    assert provider.function_names() == ["approve", "depositForBurn", "receiveMessage"]


def test_result_dict(orchestrator, make_request):
    """Results serialise to plain values for the presentation layer."""
    data = orchestrator.start_transfer(make_request()).to_dict()
    assert data["status"] == "completed"
    assert data["phase"] == "completed"
    assert data["correlation_id"] == "transfer-1"
    assert "ab" * 20 in data["message"].lower()
