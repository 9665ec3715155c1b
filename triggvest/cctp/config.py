"""Bridge orchestrator configuration.

Production defaults live in :py:class:`BridgeConfig`. Scripts and services
read overrides from ``TRIGGVEST_*`` environment variables with
:py:meth:`BridgeConfig.from_env`; tests use :py:meth:`BridgeConfig.create_test_config`.

Environment variables
---------------------

``TRIGGVEST_IRIS_API_URL``
    Override the Iris attestation API base URL. By default the mainnet or
    sandbox URL is picked from the source network.

``TRIGGVEST_CONFIRMATION_TIMEOUT``
    Seconds to wait for a submitted transaction before reporting it pending.

``TRIGGVEST_CONFIRMATION_POLL_INTERVAL``
    Seconds between transaction status queries.

``TRIGGVEST_FEE_LEVEL``
    ``LOW``, ``MEDIUM`` or ``HIGH``.

``TRIGGVEST_FAST_MAX_FEE``
    Fast transfer fee ceiling in raw USDC units.

``TRIGGVEST_MAX_MINT_ATTEMPTS``
    How many times a reverted mint is resubmitted.

``TRIGGVEST_BALANCE_CACHE_TTL``
    Seconds a queried wallet balance is reused.

``TRIGGVEST_STATE_FILE``
    JSON file for transfer state. In-memory when unset.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path

from triggvest.cctp.constants import FAST_TRANSFER_MAX_FEE, FeeLevel, SpeedTier
from triggvest.cctp.retry import RetryConfig


@dataclass(slots=True)
class AttestationTierConfig:
    """Attestation polling budget for one speed tier."""

    #: Give up and report pending after this many seconds
    timeout: float

    #: Seconds between Iris API queries
    poll_interval: float

    #: A freshly confirmed burn may not be indexed yet.
    #: Report "not found" only after the hash stayed unknown this long.
    not_found_grace: float


def _default_attestation_tiers() -> dict[SpeedTier, AttestationTierConfig]:
    return {
        SpeedTier.fast: AttestationTierConfig(timeout=60.0, poll_interval=5.0, not_found_grace=15.0),
        SpeedTier.standard: AttestationTierConfig(timeout=1200.0, poll_interval=30.0, not_found_grace=90.0),
    }


@dataclass(slots=True)
class BridgeConfig:
    """Tunables of :py:class:`~triggvest.cctp.bridge.TransferOrchestrator`."""

    #: Seconds between transaction status queries
    confirmation_poll_interval: float = 5.0

    #: Budget for one transaction to confirm. 10 minutes, testnets are slow.
    confirmation_timeout: float = 600.0

    #: Per speed tier attestation polling
    attestation_tiers: dict[SpeedTier, AttestationTierConfig] = field(default_factory=_default_attestation_tiers)

    #: Fast transfer fee ceiling, raw USDC units
    fast_max_fee: int = FAST_TRANSFER_MAX_FEE

    #: Fee priority for approve, burn and mint submissions
    fee_level: FeeLevel = FeeLevel.medium

    #: Fee priority for same-chain direct transfers
    direct_fee_level: FeeLevel = FeeLevel.high

    #: Resubmit a reverted mint at most this many times in total
    max_mint_attempts: int = 3

    #: Seconds a queried balance is reused
    balance_cache_ttl: float = 30.0

    #: Check allowance before approving
    check_allowance: bool = True

    #: Override Iris API URL. ``None`` picks mainnet/sandbox by network.
    iris_api_url: str | None = None

    #: Transfer state JSON file, ``None`` for in-memory
    state_file: Path | None = None

    #: Retry of external calls
    retry: RetryConfig = field(default_factory=RetryConfig)

    def get_attestation_tier(self, speed: SpeedTier) -> AttestationTierConfig:
        return self.attestation_tiers[speed]

    @classmethod
    def create_test_config(cls) -> "BridgeConfig":
        """Production timings, test retry delays.

        Tests run on a fake clock, so long budgets cost nothing.
        """
        return cls(retry=RetryConfig.create_test_config())

    @classmethod
    def from_env(cls, environ: dict | None = None) -> "BridgeConfig":
        """Build config from ``TRIGGVEST_*`` environment variables."""
        if environ is None:
            environ = os.environ

        config = cls()

        if environ.get("TRIGGVEST_IRIS_API_URL"):
            config.iris_api_url = environ["TRIGGVEST_IRIS_API_URL"]

        if environ.get("TRIGGVEST_CONFIRMATION_TIMEOUT"):
            config.confirmation_timeout = float(environ["TRIGGVEST_CONFIRMATION_TIMEOUT"])

        if environ.get("TRIGGVEST_CONFIRMATION_POLL_INTERVAL"):
            config.confirmation_poll_interval = float(environ["TRIGGVEST_CONFIRMATION_POLL_INTERVAL"])

        if environ.get("TRIGGVEST_FEE_LEVEL"):
            config.fee_level = FeeLevel(environ["TRIGGVEST_FEE_LEVEL"].upper())

        if environ.get("TRIGGVEST_FAST_MAX_FEE"):
            config.fast_max_fee = int(environ["TRIGGVEST_FAST_MAX_FEE"])

        if environ.get("TRIGGVEST_MAX_MINT_ATTEMPTS"):
            config.max_mint_attempts = int(environ["TRIGGVEST_MAX_MINT_ATTEMPTS"])

        if environ.get("TRIGGVEST_BALANCE_CACHE_TTL"):
            config.balance_cache_ttl = float(environ["TRIGGVEST_BALANCE_CACHE_TTL"])

        if environ.get("TRIGGVEST_STATE_FILE"):
            config.state_file = Path(environ["TRIGGVEST_STATE_FILE"]).expanduser().absolute()

        assert config.confirmation_poll_interval > 0, f"Bad poll interval {config.confirmation_poll_interval}"
        assert config.max_mint_attempts >= 1, f"Bad max mint attempts {config.max_mint_attempts}"
        return config
