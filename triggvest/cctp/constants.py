"""Circle CCTP V2 constants.

Cross-Chain Transfer Protocol V2 deployment addresses and domain mappings
for every network TriggVest can move USDC between.

CCTP enables burn-and-mint USDC transfers across chains:

1. Source chain: call ``depositForBurn()`` on TokenMessengerV2 to burn USDC
2. Circle's Iris attestation service signs the burn event
3. Destination chain: call ``receiveMessage()`` on MessageTransmitterV2 to mint USDC

Networks are a closed :py:class:`SupportedNetwork` enum. Every member has
exactly one :py:class:`NetworkDeployment` entry in :py:data:`NETWORK_DEPLOYMENTS`,
so a chain name typo is rejected at parse time instead of reaching a live submission.

- `CCTP V2 documentation <https://developers.circle.com/cctp>`_
- `EVM contract addresses <https://developers.circle.com/cctp/evm-smart-contracts>`_
"""

import enum
from dataclasses import dataclass
from decimal import Decimal

from eth_typing import HexAddress

from triggvest.cctp.errors import ValidationError

#: USDC has 6 decimals on every CCTP chain
USDC_DECIMALS = 6

#: 1 USDC in raw units
USDC_UNIT = 10**USDC_DECIMALS

#: CCTP V2 TokenMessengerV2 on mainnets. Same address on all EVM chains via CREATE2.
TOKEN_MESSENGER_V2: HexAddress = HexAddress("0x28b5a0e9C621a5BadaA536219b3a228C8168cf5d")

#: CCTP V2 MessageTransmitterV2 on mainnets. Same address on all EVM chains via CREATE2.
MESSAGE_TRANSMITTER_V2: HexAddress = HexAddress("0x81D40F21F12A8F0E3252Bccb954D722d4c464B64")

#: CCTP V2 TokenMessengerV2 on testnets.
TOKEN_MESSENGER_V2_TESTNET: HexAddress = HexAddress("0x8FE6B999Dc680CcFDD5Bf7EB0974218be2542DAA")

#: CCTP V2 MessageTransmitterV2 on testnets.
MESSAGE_TRANSMITTER_V2_TESTNET: HexAddress = HexAddress("0xE737e5cEBEEBa77EFE34D4aa090756590b1CE275")

#: Circle Iris attestation API base URL (mainnet).
IRIS_API_BASE_URL = "https://iris-api.circle.com"

#: Circle Iris attestation API base URL (testnets).
IRIS_API_SANDBOX_URL = "https://iris-api-sandbox.circle.com"

#: ``destinationCaller`` value allowing anyone to relay ``receiveMessage()``
ANY_DESTINATION_CALLER = b"\x00" * 32

#: Minimum finality threshold for fast transfers (soft finality).
FINALITY_THRESHOLD_FAST = 0

#: Minimum finality threshold for standard transfers (hard finality).
FINALITY_THRESHOLD_STANDARD = 1000

#: Default fee ceiling for fast transfers, raw USDC units (1 USDC).
FAST_TRANSFER_MAX_FEE = 1_000_000

#: Standard transfers are free.
STANDARD_TRANSFER_MAX_FEE = 0

#: Indicative Circle fast transfer fee shown in quotes, USDC.
FAST_TRANSFER_BASE_FEE = Decimal("0.01")

#: Typical fast transfer duration, seconds
FAST_TRANSFER_ESTIMATED_SECONDS = 22

#: Typical standard transfer duration, seconds
STANDARD_TRANSFER_ESTIMATED_SECONDS = 780


class SpeedTier(enum.Enum):
    """CCTP V2 transfer speed.

    - ``fast``: soft finality, fee charged, short attestation wait
    - ``standard``: hard finality, no fee, long attestation wait
    """

    standard = "standard"
    fast = "fast"

    @classmethod
    def parse(cls, value: "str | SpeedTier") -> "SpeedTier":
        if isinstance(value, SpeedTier):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise ValidationError(f"Unknown speed tier {value!r}, use 'standard' or 'fast'") from None


class FeeLevel(enum.Enum):
    """Transaction fee priority forwarded to the wallet provider."""

    low = "LOW"
    medium = "MEDIUM"
    high = "HIGH"


class SupportedNetwork(enum.Enum):
    """Networks where TriggVest can burn and mint USDC.

    Values are the canonical network identifiers used by the
    wallet provider and in persisted transfer state.
    """

    eth_sepolia = "ETH-SEPOLIA"
    avax_fuji = "AVAX-FUJI"
    op_sepolia = "OP-SEPOLIA"
    arb_sepolia = "ARB-SEPOLIA"
    base_sepolia = "BASE-SEPOLIA"
    matic_amoy = "MATIC-AMOY"

    eth = "ETH"
    avax = "AVAX"
    op = "OP"
    arb = "ARB"
    base = "BASE"
    matic = "MATIC"

    @classmethod
    def parse(cls, value: "str | SupportedNetwork") -> "SupportedNetwork":
        """Resolve a network identifier, case-insensitively.

        :raise ValidationError:
            For anything that is not a supported network.
        """
        if isinstance(value, SupportedNetwork):
            return value
        if not isinstance(value, str):
            raise ValidationError(f"Network must be a string, got {type(value)}")
        try:
            return cls(value.strip().upper())
        except ValueError:
            supported = ", ".join(n.value for n in cls)
            raise ValidationError(f"Unsupported chain {value!r}. Supported: {supported}") from None

    @property
    def deployment(self) -> "NetworkDeployment":
        return NETWORK_DEPLOYMENTS[self]

    @property
    def domain(self) -> int:
        return self.deployment.domain

    @property
    def is_testnet(self) -> bool:
        return self.deployment.testnet


@dataclass(slots=True, frozen=True)
class NetworkDeployment:
    """CCTP V2 contracts and identifiers on one network."""

    #: CCTP domain id. Not the EVM chain id.
    domain: int

    #: EVM chain id
    chain_id: int

    #: Human readable name for logs
    name: str

    #: Native USDC token, used as ``burnToken``
    usdc: HexAddress

    #: TokenMessengerV2, spender of the approval and target of ``depositForBurn()``
    token_messenger: HexAddress

    #: MessageTransmitterV2, target of ``receiveMessage()``
    message_transmitter: HexAddress

    #: Symbol of the token paying gas
    gas_symbol: str

    #: Testnets use the Iris sandbox
    testnet: bool

    @property
    def iris_api_url(self) -> str:
        return IRIS_API_SANDBOX_URL if self.testnet else IRIS_API_BASE_URL


def _testnet(domain: int, chain_id: int, name: str, usdc: str, gas_symbol: str) -> NetworkDeployment:
    return NetworkDeployment(
        domain=domain,
        chain_id=chain_id,
        name=name,
        usdc=HexAddress(usdc),
        token_messenger=TOKEN_MESSENGER_V2_TESTNET,
        message_transmitter=MESSAGE_TRANSMITTER_V2_TESTNET,
        gas_symbol=gas_symbol,
        testnet=True,
    )


def _mainnet(domain: int, chain_id: int, name: str, usdc: str, gas_symbol: str) -> NetworkDeployment:
    return NetworkDeployment(
        domain=domain,
        chain_id=chain_id,
        name=name,
        usdc=HexAddress(usdc),
        token_messenger=TOKEN_MESSENGER_V2,
        message_transmitter=MESSAGE_TRANSMITTER_V2,
        gas_symbol=gas_symbol,
        testnet=False,
    )


#: Network → CCTP deployment.
#:
#: Exhaustive over :py:class:`SupportedNetwork`, checked at import time.
NETWORK_DEPLOYMENTS: dict[SupportedNetwork, NetworkDeployment] = {
    SupportedNetwork.eth_sepolia: _testnet(0, 11155111, "Ethereum Sepolia", "0x1c7d4b196cb0c7b01d743fbc6116a902379c7238", "ETH"),
    SupportedNetwork.avax_fuji: _testnet(1, 43113, "Avalanche Fuji", "0x5425890298aed601595a70ab815c96711a31bc65", "AVAX"),
    SupportedNetwork.op_sepolia: _testnet(2, 11155420, "OP Sepolia", "0x5fd84259d66cd46123540766be93dfce6c4775b4", "ETH"),
    SupportedNetwork.arb_sepolia: _testnet(3, 421614, "Arbitrum Sepolia", "0x75faf114eafb1bdbe2f0316df893fd58ce46aa4d", "ETH"),
    SupportedNetwork.base_sepolia: _testnet(6, 84532, "Base Sepolia", "0x036cbd53842c5426634e7929541ec2318f3dcf7e", "ETH"),
    SupportedNetwork.matic_amoy: _testnet(7, 80002, "Polygon Amoy", "0x41e94eb019c0762f9bfcf9fb1e58725bfb0e7582", "POL"),
    SupportedNetwork.eth: _mainnet(0, 1, "Ethereum", "0xA0b86991c6218b36c1d19D4a2e9Eb0cE3606eB48", "ETH"),
    SupportedNetwork.avax: _mainnet(1, 43114, "Avalanche", "0xB97EF9Ef8734C71904D8002F8b6Bc66Dd9c48a6E", "AVAX"),
    SupportedNetwork.op: _mainnet(2, 10, "Optimism", "0x0b2C639c533813f4Aa9D7837CAf62653d097Ff85", "ETH"),
    SupportedNetwork.arb: _mainnet(3, 42161, "Arbitrum", "0xaf88d065e77c8cC2239327C5EDb3A432268e5831", "ETH"),
    SupportedNetwork.base: _mainnet(6, 8453, "Base", "0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913", "ETH"),
    SupportedNetwork.matic: _mainnet(7, 137, "Polygon", "0x3c499c542cEF5E3811e1192ce70d8cC03d5c3359", "POL"),
}

assert set(NETWORK_DEPLOYMENTS) == set(SupportedNetwork), "Every SupportedNetwork needs a deployment entry"

#: Mapping from CCTP domain ID to human-readable chain name, mainnet naming.
CCTP_DOMAIN_NAMES: dict[int, str] = {d.domain: d.name for d in NETWORK_DEPLOYMENTS.values() if not d.testnet}
