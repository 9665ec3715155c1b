"""Transfer requests and source chain call encoding.

- :py:class:`TransferRequest` is the validated, immutable input of a transfer
- :py:func:`prepare_approve_for_burn` and :py:func:`prepare_deposit_for_burn`
  build the two source chain contract calls of a CCTP V2 bridge

Example::

    from triggvest.cctp.transfer import TransferRequest, prepare_deposit_for_burn

    request = TransferRequest.create(
        source_chain="ETH-SEPOLIA",
        destination_chain="BASE-SEPOLIA",
        amount="1.5",
        source_wallet_ref="wallet-1",
        destination_address="0x...",
        speed="fast",
    )
    call = prepare_deposit_for_burn(request)
"""

import re
import uuid
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation

from eth_typing import HexAddress
from eth_utils import is_address, to_canonical_address, to_checksum_address

from triggvest.cctp.constants import (
    ANY_DESTINATION_CALLER,
    FAST_TRANSFER_BASE_FEE,
    FAST_TRANSFER_ESTIMATED_SECONDS,
    FAST_TRANSFER_MAX_FEE,
    FINALITY_THRESHOLD_FAST,
    FINALITY_THRESHOLD_STANDARD,
    STANDARD_TRANSFER_ESTIMATED_SECONDS,
    STANDARD_TRANSFER_MAX_FEE,
    USDC_UNIT,
    SpeedTier,
    SupportedNetwork,
)
from triggvest.cctp.errors import ValidationError

#: Plain ASCII decimal notation with at most 6 fractional digits
_AMOUNT_PATTERN = re.compile(r"^[0-9]+(\.[0-9]{1,6})?$")

#: ERC-20 approve
APPROVE_SIGNATURE = "approve(address,uint256)"

#: ERC-20 transfer, used by the same-chain route
TRANSFER_SIGNATURE = "transfer(address,uint256)"

#: TokenMessengerV2.depositForBurn with the V2 fast transfer parameters
DEPOSIT_FOR_BURN_SIGNATURE = "depositForBurn(uint256,uint32,bytes32,address,bytes32,uint256,uint32)"

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"


def parse_usdc_amount(amount: str | Decimal) -> Decimal:
    """Parse a human USDC amount.

    - Must be positive
    - Must be exactly representable with 6 decimals

    :param amount:
        E.g. ``"1"`` or ``"0.25"``.

    :return:
        Amount as :py:class:`Decimal`, in USDC (not raw units)

    :raise ValidationError:
        If the amount is malformed.
    """
    if isinstance(amount, Decimal):
        value = amount
        if not value.is_finite():
            raise ValidationError(f"Amount must be finite: {amount}")
    else:
        if not isinstance(amount, str):
            raise ValidationError(f"Amount must be a decimal string, got {type(amount)}")
        text = amount.strip()
        if not _AMOUNT_PATTERN.match(text):
            raise ValidationError(f"Invalid USDC amount {amount!r}")
        try:
            value = Decimal(text)
        except InvalidOperation as e:
            raise ValidationError(f"Invalid USDC amount {amount!r}") from e

    if value <= 0:
        raise ValidationError(f"Amount must be positive: {amount}")

    raw = value * USDC_UNIT
    if raw != raw.to_integral_value():
        raise ValidationError(f"Amount {amount} has more than 6 decimal places")

    return value


def to_raw_amount(amount: Decimal) -> int:
    """USDC amount to raw 6 decimal integer units."""
    raw = amount * USDC_UNIT
    assert raw == raw.to_integral_value(), f"Not representable in USDC units: {amount}"
    return int(raw)


def from_raw_amount(raw: int) -> Decimal:
    """Raw 6 decimal integer units to USDC amount."""
    return Decimal(raw) / USDC_UNIT


def validate_evm_address(address: str, what: str = "address") -> HexAddress:
    """Check a 20-byte EVM address and return it checksummed.

    :raise ValidationError:
        On malformed or zero address.
    """
    if not isinstance(address, str) or not is_address(address):
        raise ValidationError(f"Invalid {what}: {address!r}")

    if address.lower() == ZERO_ADDRESS:
        raise ValidationError(f"Zero address is not a valid {what}")

    return HexAddress(to_checksum_address(address))


def encode_mint_recipient(address: str) -> bytes:
    """Encode a 20-byte EVM address as CCTP ``bytes32``.

    CCTP addresses recipients as 32 bytes so that non-EVM chains fit.
    EVM addresses are left-padded with 12 zero bytes.
    """
    canonical = to_canonical_address(validate_evm_address(address, "mint recipient"))
    assert len(canonical) == 20
    return b"\x00" * 12 + canonical


def get_burn_parameters(speed: SpeedTier, fast_max_fee: int = FAST_TRANSFER_MAX_FEE) -> tuple[int, int]:
    """Protocol fee ceiling and finality threshold for a speed tier.

    :return:
        Tuple (max fee in raw USDC units, min finality threshold)
    """
    if speed == SpeedTier.fast:
        return fast_max_fee, FINALITY_THRESHOLD_FAST
    elif speed == SpeedTier.standard:
        return STANDARD_TRANSFER_MAX_FEE, FINALITY_THRESHOLD_STANDARD
    else:
        raise AssertionError(f"Unknown speed tier {speed}")


@dataclass(slots=True, frozen=True)
class TransferRequest:
    """Immutable, validated request to move USDC.

    Use :py:meth:`create` to build from raw strings.
    """

    #: Network where USDC is taken from
    source_chain: SupportedNetwork

    #: Network where USDC ends up
    destination_chain: SupportedNetwork

    #: Amount in USDC, at most 6 decimals
    amount: Decimal

    #: Wallet provider reference of the wallet holding the USDC
    source_wallet_ref: str

    #: Recipient, checksummed
    destination_address: HexAddress

    #: Fast or standard CCTP transfer
    speed: SpeedTier

    #: Caller chosen id keying the transfer state
    correlation_id: str

    #: Wallet that relays ``receiveMessage()`` on the destination chain.
    #: Defaults to the source wallet (same unified wallet on all chains).
    destination_wallet_ref: str | None = None

    @classmethod
    def create(
        cls,
        source_chain: str | SupportedNetwork,
        destination_chain: str | SupportedNetwork,
        amount: str | Decimal,
        source_wallet_ref: str,
        destination_address: str,
        speed: str | SpeedTier = SpeedTier.standard,
        correlation_id: str | None = None,
        destination_wallet_ref: str | None = None,
    ) -> "TransferRequest":
        """Validate raw input.

        :raise ValidationError:
            On any malformed field. No chain interaction happens.
        """
        source = SupportedNetwork.parse(source_chain)
        destination = SupportedNetwork.parse(destination_chain)

        if source.is_testnet != destination.is_testnet:
            raise ValidationError(f"Cannot transfer between testnet and mainnet: {source.value} -> {destination.value}")

        if not source_wallet_ref or not isinstance(source_wallet_ref, str):
            raise ValidationError("Source wallet reference missing")

        if correlation_id is None:
            correlation_id = f"transfer-{uuid.uuid4().hex[:16]}"
        elif not isinstance(correlation_id, str) or not correlation_id.strip():
            raise ValidationError(f"Invalid correlation id {correlation_id!r}")

        return cls(
            source_chain=source,
            destination_chain=destination,
            amount=parse_usdc_amount(amount),
            source_wallet_ref=source_wallet_ref,
            destination_address=validate_evm_address(destination_address, "destination address"),
            speed=SpeedTier.parse(speed),
            correlation_id=correlation_id.strip(),
            destination_wallet_ref=destination_wallet_ref or None,
        )

    @property
    def amount_raw(self) -> int:
        """Amount in 6 decimal raw units."""
        return to_raw_amount(self.amount)

    @property
    def is_same_chain(self) -> bool:
        return self.source_chain == self.destination_chain

    @property
    def mint_wallet_ref(self) -> str:
        return self.destination_wallet_ref or self.source_wallet_ref

    def to_dict(self) -> dict:
        return {
            "source_chain": self.source_chain.value,
            "destination_chain": self.destination_chain.value,
            "amount": str(self.amount),
            "source_wallet_ref": self.source_wallet_ref,
            "destination_address": self.destination_address,
            "speed": self.speed.value,
            "correlation_id": self.correlation_id,
            "destination_wallet_ref": self.destination_wallet_ref,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "TransferRequest":
        return cls.create(**data)


@dataclass(slots=True, frozen=True)
class ContractCall:
    """A contract call to be submitted through the wallet provider."""

    #: Target contract
    contract_address: HexAddress

    #: Solidity signature, e.g. ``approve(address,uint256)``
    function_signature: str

    #: Call arguments, Python typed (``int``, ``bytes``, checksummed address ``str``)
    parameters: tuple

    @property
    def function_name(self) -> str:
        return self.function_signature.split("(", 1)[0]


def prepare_approve_for_burn(request: TransferRequest) -> ContractCall:
    """Approve TokenMessengerV2 to pull ``amount`` USDC from the source wallet."""
    deployment = request.source_chain.deployment
    return ContractCall(
        contract_address=deployment.usdc,
        function_signature=APPROVE_SIGNATURE,
        parameters=(to_checksum_address(deployment.token_messenger), request.amount_raw),
    )


def prepare_deposit_for_burn(request: TransferRequest, fast_max_fee: int = FAST_TRANSFER_MAX_FEE) -> ContractCall:
    """Build the ``depositForBurn()`` call.

    Parameters in order:

    1. amount, raw units
    2. destination CCTP domain
    3. mint recipient, 32 bytes
    4. burn token, the source chain USDC
    5. destination caller, zero means anyone may relay the mint
    6. max fee, raw units
    7. min finality threshold

    :param fast_max_fee:
        Fee ceiling used when the request is a fast transfer.
    """
    assert not request.is_same_chain, f"Same chain transfer cannot be bridged: {request.source_chain}"
    source = request.source_chain.deployment
    destination = request.destination_chain.deployment
    max_fee, min_finality_threshold = get_burn_parameters(request.speed, fast_max_fee)
    return ContractCall(
        contract_address=source.token_messenger,
        function_signature=DEPOSIT_FOR_BURN_SIGNATURE,
        parameters=(
            request.amount_raw,
            destination.domain,
            encode_mint_recipient(request.destination_address),
            to_checksum_address(source.usdc),
            ANY_DESTINATION_CALLER,
            max_fee,
            min_finality_threshold,
        ),
    )


@dataclass(slots=True, frozen=True)
class SpeedTierQuote:
    """What a speed tier costs and how long it takes."""

    speed: SpeedTier

    #: Indicative fee in USDC
    fee: Decimal

    #: Fee ceiling passed to ``depositForBurn()``, raw units
    max_fee_raw: int

    #: Typical end-to-end time
    estimated_seconds: int

    #: Finality the attestation waits for
    security: str


def quote_speed_tier(speed: SpeedTier | str, fast_max_fee: int = FAST_TRANSFER_MAX_FEE) -> SpeedTierQuote:
    """Describe the cost and speed trade-off of a tier."""
    speed = SpeedTier.parse(speed)
    max_fee, _ = get_burn_parameters(speed, fast_max_fee)
    if speed == SpeedTier.fast:
        return SpeedTierQuote(
            speed=speed,
            fee=FAST_TRANSFER_BASE_FEE,
            max_fee_raw=max_fee,
            estimated_seconds=FAST_TRANSFER_ESTIMATED_SECONDS,
            security="Soft finality + Circle's fast transfer allowance",
        )
    return SpeedTierQuote(
        speed=speed,
        fee=Decimal(0),
        max_fee_raw=max_fee,
        estimated_seconds=STANDARD_TRANSFER_ESTIMATED_SECONDS,
        security="Hard finality",
    )
