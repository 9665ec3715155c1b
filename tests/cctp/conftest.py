"""Fakes for the wallet provider, the attestation service and time."""

import threading
from dataclasses import dataclass
from decimal import Decimal

import pytest

from triggvest.cctp.bridge import TransferOrchestrator
from triggvest.cctp.config import BridgeConfig
from triggvest.cctp.constants import FeeLevel, SupportedNetwork
from triggvest.cctp.errors import BroadcastUncertainError
from triggvest.cctp.provider import AttestationQuery, AttestationService, AttestationStatus, WalletProvider
from triggvest.cctp.state import ChainTransactionHandle, TransactionState, TransactionStatus
from triggvest.cctp.status import InMemoryTransferStatusStore
from triggvest.cctp.transfer import TransferRequest
from triggvest.utils import Clock

#: Recipient used by the tests
DESTINATION = "0x" + "ab" * 20


class FakeClock(Clock):
    """Sleeping advances time instantly."""

    def __init__(self, start: float = 1000.0):
        self.now = start
        self.sleeps: list[float] = []
        self._lock = threading.Lock()

    def time(self) -> float:
        with self._lock:
            return self.now

    def sleep(self, seconds: float, cancel_event: threading.Event | None = None) -> bool:
        if cancel_event is not None and cancel_event.is_set():
            return True
        with self._lock:
            self.sleeps.append(seconds)
            self.now += seconds
        return False

    @property
    def slept(self) -> float:
        return sum(self.sleeps)


@dataclass
class Submission:
    kind: str
    wallet_ref: str
    network: SupportedNetwork
    target: str
    function_name: str
    parameters: tuple
    fee_level: FeeLevel
    transaction_id: str


class FakeWalletProvider(WalletProvider):
    """Records submissions and answers status queries from a per-function plan.

    - ``pending_polls[name]``: status queries answered ``pending`` before the outcome
    - ``outcomes[name]``: final state, or a list consumed one per submission
    - ``refusals[name]``: exception raised at submission
    - ``uncertain_broadcasts``: functions whose broadcast loses the connection
      after the node got the transaction
    """

    def __init__(self):
        self.submissions: list[Submission] = []
        self.events: list[tuple] = []
        self.pending_polls: dict[str, int] = {}
        self.outcomes: dict[str, TransactionState | list[TransactionState]] = {}
        self.refusals: dict[str, Exception] = {}
        self.uncertain_broadcasts: set[str] = set()
        self.status_errors: list[Exception] = []
        self.balances: dict[tuple, Decimal] = {}
        self.balance_queries = 0
        self.allowance = 0
        self.status_queries = 0
        self._plans: dict[str, list[TransactionState]] = {}
        self._lock = threading.Lock()

    def function_names(self) -> list[str]:
        return [s.function_name for s in self.submissions]

    def force_status(self, transaction_id: str, state: TransactionState):
        with self._lock:
            self._plans[transaction_id] = [state]

    def _submit(self, kind, wallet_ref, network, target, function_name, parameters, fee_level) -> ChainTransactionHandle:
        with self._lock:
            if function_name in self.refusals:
                raise self.refusals[function_name]

            n = len(self.submissions) + 1
            transaction_id = f"tx-{n}"

            outcome = self.outcomes.get(function_name, TransactionState.confirmed)
            if isinstance(outcome, list):
                outcome = outcome.pop(0) if len(outcome) > 1 else outcome[0]

            self._plans[transaction_id] = [TransactionState.pending] * self.pending_polls.get(function_name, 0) + [outcome]
            self.submissions.append(Submission(kind, wallet_ref, network, target, function_name, parameters, fee_level, transaction_id))
            self.events.append(("submit", function_name, transaction_id))
            handle = ChainTransactionHandle(transaction_id=transaction_id, network=network)
            if function_name in self.uncertain_broadcasts:
                raise BroadcastUncertainError(f"Connection dropped while broadcasting {transaction_id}", handle)
            return handle

    def submit_contract_call(self, wallet_ref, network, contract_address, function_signature, parameters, fee_level):
        return self._submit("contract_call", wallet_ref, network, contract_address, function_signature.split("(")[0], parameters, fee_level)

    def submit_token_transfer(self, wallet_ref, network, token_address, destination, amount_raw, fee_level):
        return self._submit("token_transfer", wallet_ref, network, token_address, "transfer", (destination, amount_raw), fee_level)

    def query_transaction_status(self, handle):
        with self._lock:
            self.status_queries += 1
            if self.status_errors:
                raise self.status_errors.pop(0)
            plan = self._plans[handle.transaction_id]
            state = plan.pop(0) if len(plan) > 1 else plan[0]
            self.events.append(("status", handle.transaction_id, state))
            chain_hash = None if state == TransactionState.pending else "0x" + handle.transaction_id.encode().hex().rjust(64, "0")
            return TransactionStatus(state, chain_tx_hash=chain_hash)

    def query_token_balance(self, wallet_ref, network, token_symbol):
        with self._lock:
            self.balance_queries += 1
            return self.balances.get((wallet_ref, network, token_symbol), Decimal(1000))

    def query_allowance(self, wallet_ref, network, token_address, spender):
        return self.allowance


class FakeAttestationService(AttestationService):
    """Answers from ``script``, the last answer repeats."""

    def __init__(self, script: list[AttestationStatus] | None = None):
        self.script = list(script or [AttestationStatus.complete])
        self.queries: list[tuple[int, str]] = []
        self._lock = threading.Lock()

    def query_attestation(self, source_domain, burn_tx_hash):
        with self._lock:
            self.queries.append((source_domain, burn_tx_hash))
            status = self.script.pop(0) if len(self.script) > 1 else self.script[0]

        if status == AttestationStatus.complete:
            return AttestationQuery(
                status=status,
                message=b"message:" + burn_tx_hash.encode(),
                signature=b"\x01" * 65,
                nonce="42",
                raw_status="complete",
            )
        elif status == AttestationStatus.pending:
            return AttestationQuery(status=status, raw_status="pending_confirmations")
        return AttestationQuery(status=status)


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def provider() -> FakeWalletProvider:
    return FakeWalletProvider()


@pytest.fixture()
def attestation_service() -> FakeAttestationService:
    return FakeAttestationService()


@pytest.fixture()
def config() -> BridgeConfig:
    return BridgeConfig.create_test_config()


@pytest.fixture()
def store() -> InMemoryTransferStatusStore:
    return InMemoryTransferStatusStore()


@pytest.fixture()
def orchestrator(provider, attestation_service, store, config, clock) -> TransferOrchestrator:
    return TransferOrchestrator(
        provider=provider,
        attestation_service=attestation_service,
        store=store,
        config=config,
        clock=clock,
    )


@pytest.fixture()
def make_request():
    """Build a valid testnet request, override any field."""

    def _make(**kwargs) -> TransferRequest:
        args = dict(
            source_chain="ETH-SEPOLIA",
            destination_chain="BASE-SEPOLIA",
            amount="1",
            source_wallet_ref="wallet-1",
            destination_address=DESTINATION,
            speed="fast",
            correlation_id="transfer-1",
        )
        args.update(kwargs)
        return TransferRequest.create(**args)

    return _make
