"""Transfer state machine data model.

A bridge transfer moves through these phases, in order::

    created → approval_submitted → approval_confirmed
            → burn_submitted → burn_confirmed
            → attestation_pending → attestation_received
            → mint_submitted → completed

``failed`` is terminal and reachable from any submission failure.
Same-chain transfers skip the bridge and go
``created → direct_submitted → completed``.

:py:class:`TransferState` records are owned by
:py:class:`~triggvest.cctp.bridge.TransferOrchestrator` and persisted by
:py:mod:`triggvest.cctp.status` after every step, so an interrupted transfer
can be resumed from the last persisted phase.
"""

import datetime
import enum
from dataclasses import dataclass, field

from triggvest.cctp.constants import SupportedNetwork
from triggvest.cctp.errors import BridgeError, DuplicateSubmissionError
from triggvest.cctp.transfer import TransferRequest
from triggvest.utils import utc_now


class TransactionState(enum.Enum):
    """Chain state of a submitted transaction as seen by the wallet provider."""

    pending = "PENDING"
    confirmed = "CONFIRMED"
    failed = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self != TransactionState.pending


@dataclass(slots=True, frozen=True)
class TransactionStatus:
    """Answer of :py:meth:`~triggvest.cctp.provider.WalletProvider.query_transaction_status`."""

    state: TransactionState

    #: On-chain transaction hash, once the provider has broadcast the transaction
    chain_tx_hash: str | None = None


@dataclass(slots=True)
class ChainTransactionHandle:
    """A transaction submitted through the wallet provider.

    The provider issued :py:attr:`transaction_id` is opaque. For a web3 provider
    it is the transaction hash; for a custodial wallet API it is the API's
    transaction id and :py:attr:`chain_tx_hash` is learnt later.
    """

    #: Provider issued id
    transaction_id: str

    #: Network the transaction was submitted to
    network: SupportedNetwork

    #: Last observed chain state
    status: TransactionState = TransactionState.pending

    #: On-chain hash, when known
    chain_tx_hash: str | None = None

    #: When we submitted it
    submitted_at: datetime.datetime = field(default_factory=utc_now)

    def observe(self, status: TransactionStatus):
        """Record a status query answer."""
        self.status = status.state
        if status.chain_tx_hash:
            self.chain_tx_hash = status.chain_tx_hash

    def to_dict(self) -> dict:
        return {
            "transaction_id": self.transaction_id,
            "network": self.network.value,
            "status": self.status.value,
            "chain_tx_hash": self.chain_tx_hash,
            "submitted_at": self.submitted_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ChainTransactionHandle":
        return cls(
            transaction_id=data["transaction_id"],
            network=SupportedNetwork(data["network"]),
            status=TransactionState(data["status"]),
            chain_tx_hash=data.get("chain_tx_hash"),
            submitted_at=datetime.datetime.fromisoformat(data["submitted_at"]),
        )


class TransferRoute(enum.Enum):
    """How a transfer moves the funds."""

    #: Same chain ERC-20 transfer
    direct = "direct"

    #: CCTP burn and mint
    bridge = "bridge"


class TransferPhase(enum.Enum):
    """Phase of a single transfer.

    Each bridge transfer progresses through these phases in order.
    """

    #: Accepted, nothing submitted
    created = "created"

    #: Same-chain route: ERC-20 transfer submitted
    direct_submitted = "direct_submitted"

    #: USDC approval for TokenMessengerV2 submitted
    approval_submitted = "approval_submitted"

    #: Approval confirmed or existing allowance sufficient
    approval_confirmed = "approval_confirmed"

    #: ``depositForBurn()`` submitted
    burn_submitted = "burn_submitted"

    #: Burn confirmed on the source chain, we know the burn tx hash
    burn_confirmed = "burn_confirmed"

    #: Polling Iris for the attestation
    attestation_pending = "attestation_pending"

    #: Attestation message and signature received
    attestation_received = "attestation_received"

    #: ``receiveMessage()`` submitted on the destination chain
    mint_submitted = "mint_submitted"

    #: USDC credited on the destination
    completed = "completed"

    #: Terminal failure
    failed = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (TransferPhase.completed, TransferPhase.failed)

    @property
    def ordinal(self) -> int:
        return _PHASE_ORDER.index(self)

    def is_past(self, other: "TransferPhase") -> bool:
        """Whether this phase comes strictly after ``other``.

        ``failed`` counts as past everything, so guards never resubmit a failed transfer.
        """
        return self.ordinal > other.ordinal

    def is_at_least(self, other: "TransferPhase") -> bool:
        return self.ordinal >= other.ordinal


_PHASE_ORDER = list(TransferPhase)


@dataclass(slots=True, frozen=True)
class AttestationRecord:
    """Circle's signed proof of a burn.

    Everything ``receiveMessage()`` needs on the destination chain.
    Produced once per confirmed burn and never modified.
    """

    #: CCTP domain of the source chain
    source_domain: int

    #: Hash of the ``depositForBurn()`` transaction
    burn_tx_hash: str

    #: CCTP message bytes to relay
    message: bytes

    #: Attestation signature bytes
    signature: bytes

    #: Iris event nonce, when reported
    nonce: str | None = None

    def to_dict(self) -> dict:
        return {
            "source_domain": self.source_domain,
            "burn_tx_hash": self.burn_tx_hash,
            "message": "0x" + self.message.hex(),
            "signature": "0x" + self.signature.hex(),
            "nonce": self.nonce,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "AttestationRecord":
        return cls(
            source_domain=int(data["source_domain"]),
            burn_tx_hash=data["burn_tx_hash"],
            message=bytes.fromhex(data["message"].removeprefix("0x")),
            signature=bytes.fromhex(data["signature"].removeprefix("0x")),
            nonce=data.get("nonce"),
        )


@dataclass(slots=True)
class TransferState:
    """Mutable record of one transfer, keyed by correlation id."""

    request: TransferRequest

    route: TransferRoute

    phase: TransferPhase = TransferPhase.created

    approval_handle: ChainTransactionHandle | None = None

    burn_handle: ChainTransactionHandle | None = None

    #: Source chain hash of the confirmed burn, key for the attestation lookup
    burn_tx_hash: str | None = None

    attestation: AttestationRecord | None = None

    mint_handle: ChainTransactionHandle | None = None

    #: Same-chain route transfer
    direct_handle: ChainTransactionHandle | None = None

    #: How many ``receiveMessage()`` transactions we have submitted
    mint_attempts: int = 0

    #: Human readable reason of the last failure or wait
    last_error: str | None = None

    #: Exception class name of :py:attr:`last_error`
    last_error_type: str | None = None

    created_at: datetime.datetime = field(default_factory=utc_now)

    updated_at: datetime.datetime = field(default_factory=utc_now)

    @property
    def correlation_id(self) -> str:
        return self.request.correlation_id

    def assign_handle(self, stage: str, handle: ChainTransactionHandle):
        """Attach a freshly submitted transaction to a stage.

        :param stage:
            ``approval``, ``burn``, ``mint`` or ``direct``

        :raise DuplicateSubmissionError:
            The stage already has an active handle. A reverted mint must be
            cleared with :py:meth:`clear_failed_mint` first.
        """
        attr = f"{stage}_handle"
        assert attr in ("approval_handle", "burn_handle", "mint_handle", "direct_handle"), f"Unknown stage {stage}"
        existing = getattr(self, attr)
        if existing is not None:
            raise DuplicateSubmissionError(f"Transfer {self.correlation_id} already has a {stage} transaction {existing.transaction_id}, refusing to submit {handle.transaction_id}")
        setattr(self, attr, handle)

    def clear_failed_mint(self):
        """Drop a mint handle that reverted on-chain so the mint can be retried."""
        assert self.mint_handle is not None, "No mint to clear"
        assert self.mint_handle.status == TransactionState.failed, f"Mint {self.mint_handle.transaction_id} did not fail: {self.mint_handle.status}"
        self.mint_handle = None

    def record_error(self, error: BaseException | str | None):
        if error is None:
            self.last_error = None
            self.last_error_type = None
        elif isinstance(error, BaseException):
            self.last_error = str(error)
            self.last_error_type = type(error).__name__
        else:
            self.last_error = error
            self.last_error_type = None

    def touch(self):
        self.updated_at = utc_now()

    def to_dict(self) -> dict:
        def _h(handle: ChainTransactionHandle | None):
            return handle.to_dict() if handle else None

        return {
            "request": self.request.to_dict(),
            "route": self.route.value,
            "phase": self.phase.value,
            "approval_handle": _h(self.approval_handle),
            "burn_handle": _h(self.burn_handle),
            "burn_tx_hash": self.burn_tx_hash,
            "attestation": self.attestation.to_dict() if self.attestation else None,
            "mint_handle": _h(self.mint_handle),
            "direct_handle": _h(self.direct_handle),
            "mint_attempts": self.mint_attempts,
            "last_error": self.last_error,
            "last_error_type": self.last_error_type,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "TransferState":
        def _h(value: dict | None):
            return ChainTransactionHandle.from_dict(value) if value else None

        return cls(
            request=TransferRequest.from_dict(data["request"]),
            route=TransferRoute(data["route"]),
            phase=TransferPhase(data["phase"]),
            approval_handle=_h(data.get("approval_handle")),
            burn_handle=_h(data.get("burn_handle")),
            burn_tx_hash=data.get("burn_tx_hash"),
            attestation=AttestationRecord.from_dict(data["attestation"]) if data.get("attestation") else None,
            mint_handle=_h(data.get("mint_handle")),
            direct_handle=_h(data.get("direct_handle")),
            mint_attempts=data.get("mint_attempts", 0),
            last_error=data.get("last_error"),
            last_error_type=data.get("last_error_type"),
            created_at=datetime.datetime.fromisoformat(data["created_at"]),
            updated_at=datetime.datetime.fromisoformat(data["updated_at"]),
        )


class StageOutcome(enum.Enum):
    """Tagged outcome of one bridge stage."""

    #: Stage transaction confirmed on-chain
    confirmed = "confirmed"

    #: Submitted, not yet confirmed within the budget. Resume later.
    pending = "pending"

    #: Provider refused or the transaction reverted
    failed = "failed"

    #: Nothing to do, e.g. the allowance already covers the amount
    skipped = "skipped"


@dataclass(slots=True)
class StageResult:
    """Result of :py:class:`~triggvest.cctp.approval.ApprovalStage`,
    :py:class:`~triggvest.cctp.burn.BurnStage`,
    :py:class:`~triggvest.cctp.receive.MintStage` or the direct transfer."""

    outcome: StageOutcome

    handle: ChainTransactionHandle | None = None

    error: BridgeError | None = None

    @property
    def is_done(self) -> bool:
        return self.outcome in (StageOutcome.confirmed, StageOutcome.skipped)


class AttestationOutcome(enum.Enum):
    """Tagged outcome of attestation polling."""

    #: Attestation signed and available
    received = "received"

    #: Budget exhausted, the burn is valid, poll again later
    pending = "pending"

    #: Iris does not know the burn: domain/hash mismatch, terminal
    not_found = "not_found"


@dataclass(slots=True)
class AttestationResult:
    """Result of :py:meth:`~triggvest.cctp.attestation.AttestationPoller.poll`."""

    outcome: AttestationOutcome

    attestation: AttestationRecord | None = None

    #: Last Iris status or delay reason seen, for the user
    detail: str | None = None

    #: How many Iris queries were made
    attempts: int = 0


class TransferResultStatus(enum.Enum):
    """Status reported back to the strategy engine and presentation layer."""

    completed = "completed"

    #: Waiting on chain confirmation or attestation. Call resume later.
    pending = "pending"

    failed = "failed"


@dataclass(slots=True)
class TransferResult:
    """What :py:meth:`~triggvest.cctp.bridge.TransferOrchestrator.start_transfer`
    and :py:meth:`~triggvest.cctp.bridge.TransferOrchestrator.resume_transfer` return."""

    status: TransferResultStatus

    correlation_id: str

    phase: TransferPhase

    message: str

    approval_tx_id: str | None = None

    burn_tx_id: str | None = None

    burn_tx_hash: str | None = None

    mint_tx_id: str | None = None

    direct_tx_id: str | None = None

    #: What the caller should do next, for pending and failed results
    next_step: str | None = None

    #: Failure detail
    error: str | None = None

    @classmethod
    def from_state(cls, state: TransferState, status: TransferResultStatus, message: str, next_step: str | None = None) -> "TransferResult":
        return cls(
            status=status,
            correlation_id=state.correlation_id,
            phase=state.phase,
            message=message,
            approval_tx_id=state.approval_handle.transaction_id if state.approval_handle else None,
            burn_tx_id=state.burn_handle.transaction_id if state.burn_handle else None,
            burn_tx_hash=state.burn_tx_hash,
            mint_tx_id=state.mint_handle.transaction_id if state.mint_handle else None,
            direct_tx_id=state.direct_handle.transaction_id if state.direct_handle else None,
            next_step=next_step,
            error=state.last_error if status != TransferResultStatus.completed else None,
        )

    def to_dict(self) -> dict:
        return {
            "status": self.status.value,
            "correlation_id": self.correlation_id,
            "phase": self.phase.value,
            "message": self.message,
            "approval_tx_id": self.approval_tx_id,
            "burn_tx_id": self.burn_tx_id,
            "burn_tx_hash": self.burn_tx_hash,
            "mint_tx_id": self.mint_tx_id,
            "direct_tx_id": self.direct_tx_id,
            "next_step": self.next_step,
            "error": self.error,
        }
