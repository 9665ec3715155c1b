"""Interfaces of the external collaborators.

The orchestrator never talks to a chain or to Circle directly.
Chain access goes through a :py:class:`WalletProvider` and attestation
lookups through an :py:class:`AttestationService`:

- :py:class:`triggvest.cctp.web3_provider.Web3WalletProvider` signs with local accounts over JSON-RPC
- :py:class:`triggvest.cctp.monitor.IrisAttestationService` queries Circle's Iris API

A custodial wallet API (developer controlled wallets) can be plugged in
by implementing :py:class:`WalletProvider`.
"""

import enum
from dataclasses import dataclass
from decimal import Decimal

from eth_typing import HexAddress

from triggvest.cctp.constants import FeeLevel, SupportedNetwork
from triggvest.cctp.state import ChainTransactionHandle, TransactionStatus


class WalletProvider:
    """Submits transactions and reads balances on behalf of wallet references.

    Implementations must be thread safe: the orchestrator calls them
    from several transfer threads at once. Submissions for the same
    wallet are serialised by the orchestrator.

    Submission methods raise :py:class:`~triggvest.cctp.errors.ProviderError`
    when the provider refuses the transaction, and
    :py:class:`~triggvest.cctp.errors.TransientProviderError` for failures
    worth retrying. When the transaction was signed but the broadcast
    result is unknown they raise
    :py:class:`~triggvest.cctp.errors.BroadcastUncertainError` with the
    handle of the signed transaction.
    """

    def submit_contract_call(
        self,
        wallet_ref: str,
        network: SupportedNetwork,
        contract_address: HexAddress | str,
        function_signature: str,
        parameters: tuple,
        fee_level: FeeLevel,
    ) -> ChainTransactionHandle:
        """Sign and broadcast a contract call.

        :param function_signature:
            Solidity signature, e.g. ``approve(address,uint256)``

        :param parameters:
            Arguments matching the signature
        """
        raise NotImplementedError()

    def submit_token_transfer(
        self,
        wallet_ref: str,
        network: SupportedNetwork,
        token_address: HexAddress | str,
        destination: HexAddress | str,
        amount_raw: int,
        fee_level: FeeLevel,
    ) -> ChainTransactionHandle:
        """Send an ERC-20 token transfer."""
        raise NotImplementedError()

    def query_transaction_status(self, handle: ChainTransactionHandle) -> TransactionStatus:
        raise NotImplementedError()

    def query_token_balance(self, wallet_ref: str, network: SupportedNetwork, token_symbol: str) -> Decimal:
        """Balance in human units, e.g. ``Decimal("12.5")`` USDC.

        :param token_symbol:
            ``USDC`` or the native gas token symbol of the network
        """
        raise NotImplementedError()

    def query_allowance(self, wallet_ref: str, network: SupportedNetwork, token_address: HexAddress | str, spender: HexAddress | str) -> int:
        """ERC-20 allowance in raw units."""
        raise NotImplementedError()


class AttestationStatus(enum.Enum):
    """Attestation service answer for one burn."""

    #: Burn seen, waiting for finality or the fast transfer allowance
    pending = "pending"

    #: Message signed
    complete = "complete"

    #: Hash unknown to the service
    not_found = "not_found"


@dataclass(slots=True, frozen=True)
class AttestationQuery:
    """One answer of :py:meth:`AttestationService.query_attestation`."""

    status: AttestationStatus

    #: CCTP message bytes, when complete
    message: bytes | None = None

    #: Attestation signature bytes, when complete
    signature: bytes | None = None

    #: Iris event nonce
    nonce: str | None = None

    #: Why Circle holds the transfer, e.g. ``insufficient_fee``
    delay_reason: str | None = None

    #: Raw status string reported by the service
    raw_status: str | None = None

    @property
    def is_complete(self) -> bool:
        return self.status == AttestationStatus.complete and self.message is not None and self.signature is not None


class AttestationService:
    """Looks up Circle's attestation for a burn transaction."""

    def query_attestation(self, source_domain: int, burn_tx_hash: str) -> AttestationQuery:
        """Single, non-blocking lookup.

        :raise requests.HTTPError:
            For rate limits and server errors, retried by the caller.
        """
        raise NotImplementedError()
