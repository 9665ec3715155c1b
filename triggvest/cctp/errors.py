"""Bridge error taxonomy.

- :py:class:`ValidationError` : rejected before any chain interaction
- :py:class:`ProviderError` : a submission or query was refused by the wallet provider,
  terminal for that stage attempt
- :py:class:`BroadcastUncertainError` : the submission may have gone out, the stage waits for it
- :py:class:`ConfirmationTimeout`, :py:class:`AttestationTimeout` : non-terminal,
  the transfer stays resumable at the same phase
- :py:class:`AttestationNotFound` : terminal for the burn, never retried as if pending
- :py:class:`MintFailure` : kept next to the attestation so the mint can be retried

Timeouts are normally reported as a ``pending`` :py:class:`~triggvest.cctp.state.TransferResult`
rather than raised. The timeout classes exist so that the reason can be
recorded in :py:attr:`~triggvest.cctp.state.TransferState.last_error`.
"""

from decimal import Decimal


class BridgeError(Exception):
    """Base class for all bridge errors."""


class ValidationError(BridgeError):
    """Malformed address, amount or unsupported chain."""


class UnknownTransferError(BridgeError):
    """No transfer state stored for a correlation id."""


class DuplicateSubmissionError(BridgeError):
    """A stage already has a transaction handle and may not be submitted again."""


class ProviderError(BridgeError):
    """Wallet provider rejected a submission: insufficient funds, nonce conflict, etc."""


class TransientProviderError(ProviderError):
    """Provider failure that is expected to go away: RPC hiccup, rate limit.

    Retried by :py:func:`triggvest.cctp.retry.call_with_retry`.
    """


class BroadcastUncertainError(TransientProviderError):
    """The connection failed while broadcasting a signed transaction.

    The node may or may not have accepted it. ``handle`` points at the
    signed transaction hash, so the stage can wait for it like any other
    submission instead of failing or sending it again.
    """

    def __init__(self, message: str, handle):
        self.handle = handle
        super().__init__(message)


class InsufficientBalanceError(ProviderError):
    """Wallet does not hold enough of a token.

    Carries the balances so the caller can tell the user how much to top up.
    """

    def __init__(self, token_symbol: str, available: Decimal, required: Decimal, network: str | None = None):
        self.token_symbol = token_symbol
        self.available = available
        self.required = required
        self.network = network
        where = f" on {network}" if network else ""
        super().__init__(f"Insufficient {token_symbol} balance{where}: available {available}, required {required}. {self.remediation}")

    @property
    def shortfall(self) -> Decimal:
        return self.required - self.available

    @property
    def remediation(self) -> str:
        return f"Top up at least {self.shortfall} {self.token_symbol} and retry."


class InsufficientGasError(InsufficientBalanceError):
    """Wallet cannot pay the transaction fee in the native gas token."""


class ConfirmationTimeout(BridgeError):
    """Submitted transaction not confirmed within the polling budget.

    The transaction may still confirm later.
    """


class AttestationTimeout(BridgeError):
    """Burn is valid but the attestation service has not signed it yet."""


class AttestationNotFound(BridgeError):
    """Attestation service does not know the burn transaction.

    Indicates a burn/domain mismatch.
    """


class MintFailure(BridgeError):
    """Minting on the destination chain failed after a valid attestation."""
