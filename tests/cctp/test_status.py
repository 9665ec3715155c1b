"""Transfer state records and stores."""

import datetime
from pathlib import Path

import pytest

from triggvest.cctp.constants import SupportedNetwork
from triggvest.cctp.errors import DuplicateSubmissionError
from triggvest.cctp.state import (
    AttestationRecord,
    ChainTransactionHandle,
    TransactionState,
    TransactionStatus,
    TransferPhase,
    TransferRoute,
    TransferState,
)
from triggvest.cctp.status import InMemoryTransferStatusStore, JSONFileTransferStatusStore, create_transfer_status_store


@pytest.fixture()
def state(make_request) -> TransferState:
    return TransferState(request=make_request(), route=TransferRoute.bridge)


def test_phase_ordering():
    """Phases advance monotonically and failed is past everything."""
    assert TransferPhase.burn_confirmed.is_past(TransferPhase.approval_submitted)
    assert not TransferPhase.approval_submitted.is_past(TransferPhase.approval_submitted)
    assert TransferPhase.approval_submitted.is_at_least(TransferPhase.approval_submitted)
    assert TransferPhase.completed.is_past(TransferPhase.mint_submitted)
    for phase in TransferPhase:
        if phase != TransferPhase.failed:
            assert TransferPhase.failed.is_past(phase)
    assert TransferPhase.completed.is_terminal
    assert TransferPhase.failed.is_terminal
    assert not TransferPhase.attestation_pending.is_terminal


def test_assign_handle_once(state):
    """A stage accepts one transaction only."""
    state.assign_handle("burn", ChainTransactionHandle("tx-1", SupportedNetwork.eth_sepolia))

    with pytest.raises(DuplicateSubmissionError):
        state.assign_handle("burn", ChainTransactionHandle("tx-2", SupportedNetwork.eth_sepolia))

    assert state.burn_handle.transaction_id == "tx-1"


def test_clear_failed_mint(state):
    """Only a reverted mint can be replaced."""
    handle = ChainTransactionHandle("tx-1", SupportedNetwork.base_sepolia)
    state.assign_handle("mint", handle)

    with pytest.raises(AssertionError):
        state.clear_failed_mint()

    handle.observe(TransactionStatus(TransactionState.failed, chain_tx_hash="0x" + "11" * 32))
    state.clear_failed_mint()
    state.assign_handle("mint", ChainTransactionHandle("tx-2", SupportedNetwork.base_sepolia))
    assert state.mint_handle.transaction_id == "tx-2"


def test_state_serialisation(state):
    """Every field survives the trip through JSON compatible dicts."""
    handle = ChainTransactionHandle("tx-1", SupportedNetwork.eth_sepolia)
    handle.observe(TransactionStatus(TransactionState.confirmed, chain_tx_hash="0x" + "22" * 32))
    state.assign_handle("approval", handle)
    state.phase = TransferPhase.attestation_received
    state.burn_tx_hash = "0x" + "33" * 32
    state.attestation = AttestationRecord(0, state.burn_tx_hash, b"msg", b"\x01" * 65, "5")
    state.record_error(RuntimeError("boom"))

    copy = TransferState.from_dict(state.to_dict())

    assert copy == state
    assert copy.approval_handle.status == TransactionState.confirmed
    assert copy.attestation.signature == b"\x01" * 65
    assert copy.last_error_type == "RuntimeError"


def test_in_memory_create_once(state):
    """The second create with the same id returns the stored record."""
    store = InMemoryTransferStatusStore()

    stored, created = store.create(state)
    assert created
    assert stored.correlation_id == "transfer-1"

    state.phase = TransferPhase.failed
    stored, created = store.create(state)
    assert not created
    assert stored.phase == TransferPhase.created


def test_in_memory_copies_isolated(state):
    """Mutating a returned state does not touch the store."""
    store = InMemoryTransferStatusStore()
    store.save(state)

    copy = store.get("transfer-1")
    copy.phase = TransferPhase.completed

    assert store.get("transfer-1").phase == TransferPhase.created
    assert store.get("missing") is None


def test_list_outstanding(make_request):
    """Listing skips finished transfers unless asked."""
    store = InMemoryTransferStatusStore()
    start = datetime.datetime(2025, 1, 1)
    for i, phase in enumerate([TransferPhase.burn_confirmed, TransferPhase.completed, TransferPhase.created]):
        s = TransferState(request=make_request(correlation_id=f"t-{i}"), route=TransferRoute.bridge, phase=phase, created_at=start + datetime.timedelta(minutes=i))
        store.save(s)

    assert [s.correlation_id for s in store.list()] == ["t-0", "t-2"]
    assert len(store.list(include_terminal=True)) == 3


def test_json_store_persists(tmp_path, state):
    """A new store instance reads what an earlier one wrote."""
    path = tmp_path / "state" / "transfers.json"
    store = JSONFileTransferStatusStore(path)

    _, created = store.create(state)
    assert created
    state.phase = TransferPhase.burn_submitted
    state.assign_handle("burn", ChainTransactionHandle("tx-9", SupportedNetwork.eth_sepolia))
    store.save(state)

    reopened = JSONFileTransferStatusStore(path)
    loaded = reopened.get("transfer-1")
    assert loaded.phase == TransferPhase.burn_submitted
    assert loaded.burn_handle.transaction_id == "tx-9"

    _, created = reopened.create(state)
    assert not created
    assert [s.correlation_id for s in reopened.list()] == ["transfer-1"]


def test_json_store_requires_absolute_path():
    """Relative state files are refused."""
    with pytest.raises(AssertionError):
        JSONFileTransferStatusStore(Path("transfers.json"))


def test_create_transfer_status_store(tmp_path):
    """Store picked by configured path."""
    assert isinstance(create_transfer_status_store(None), InMemoryTransferStatusStore)
    assert isinstance(create_transfer_status_store(tmp_path / "x.json"), JSONFileTransferStatusStore)
