"""CCTP V2 transfer status via Circle's Iris API.

Inspect cross-chain USDC transfers using the ``/v2/messages`` endpoint.

The Iris API tracks transfers from ``depositForBurn()`` through to
attestation readiness. Status progresses as:

1. **404 Not Found**: burn transaction not yet indexed by Iris, or a wrong domain/hash
2. **pending_confirmations**: burn detected, awaiting block finality
3. **complete**: attestation signed, ready for ``receiveMessage()``

Additionally, the ``delay_reason`` field explains holds on transfers:

- ``insufficient_fee``: Fast Transfer fee too low
- ``amount_above_max``: exceeds single-transfer cap
- ``insufficient_allowance_available``: Fast Transfer allowance exhausted

Example::

    from triggvest.cctp.constants import SupportedNetwork
    from triggvest.cctp.monitor import IrisAttestationService

    service = IrisAttestationService.for_network(SupportedNetwork.arb_sepolia)
    status = service.fetch_transfer_status(source_domain=3, transaction_hash="0xabc...")
    if status and status.is_complete:
        print("Transfer ready for receive!")

Rate limits
-----------

The Iris API allows 35 requests/second. Exceeding this triggers a
5-minute block (HTTP 429). :py:func:`create_iris_session` throttles
all threads sharing the session well below that.

For the full API reference, see:
`Circle CCTP V2 messages endpoint <https://developers.circle.com/api-reference/cctp/all/get-messages-v-2>`_
"""

import logging
from dataclasses import dataclass

from requests import Session
from requests_ratelimiter import LimiterAdapter
from urllib3.util.retry import Retry

from triggvest.cctp.constants import SupportedNetwork
from triggvest.cctp.provider import AttestationQuery, AttestationService, AttestationStatus

logger = logging.getLogger(__name__)

#: HTTP 404 status code indicating resource not found
HTTP_NOT_FOUND = 404

#: Seconds before an Iris request is abandoned
DEFAULT_REQUEST_TIMEOUT = 30.0

#: Connection level retries inside the session
DEFAULT_RETRIES = 3

#: Backoff factor for connection level retries (seconds)
DEFAULT_BACKOFF_FACTOR = 0.5

#: Stay well below the Iris limit of 35 requests/second
DEFAULT_REQUESTS_PER_SECOND = 10.0


class IrisSession(Session):
    """A :py:class:`requests.Session` subclass that carries the Iris API URL.

    Use :py:func:`create_iris_session` to create instances.
    """

    #: Iris API base URL (e.g. ``https://iris-api-sandbox.circle.com``).
    api_url: str

    def __init__(self, api_url: str):
        super().__init__()
        self.api_url = api_url.rstrip("/")

    def __repr__(self) -> str:
        return f"<IrisSession api_url={self.api_url!r}>"


def create_iris_session(
    api_url: str,
    retries: int = DEFAULT_RETRIES,
    backoff_factor: float = DEFAULT_BACKOFF_FACTOR,
    requests_per_second: float = DEFAULT_REQUESTS_PER_SECOND,
    pool_maxsize: int = 32,
) -> IrisSession:
    """Create a rate limited :py:class:`IrisSession`.

    - Rate limiting shared by all threads using the session
    - Connection errors and gateway errors are retried with exponential backoff.
      Once those retries run out the last response is returned, so
      :py:meth:`requests.Response.raise_for_status` surfaces it to
      :py:func:`triggvest.cctp.retry.call_with_retry`.

    :param api_url:
        Iris API base URL
    :param retries:
        Maximum number of retry attempts for failed requests
    :param backoff_factor:
        Backoff factor for exponential retry delays
    :param requests_per_second:
        Maximum requests per second to avoid the 5 minute Iris block
    :param pool_maxsize:
        Should be at least as large as the number of parallel transfers.
    """
    session = IrisSession(api_url=api_url)

    retry_policy = Retry(
        total=retries,
        backoff_factor=backoff_factor,
        status_forcelist=[502, 503, 504],
        respect_retry_after_header=True,
        raise_on_status=False,
    )

    adapter = LimiterAdapter(
        per_second=requests_per_second,
        max_retries=retry_policy,
        pool_connections=pool_maxsize,
        pool_maxsize=pool_maxsize,
    )
    session.mount("http://", adapter)
    session.mount("https://", adapter)
    return session


@dataclass(slots=True)
class IrisTransferStatus:
    """Status of a CCTP transfer from Circle's Iris V2 API.

    Represents a single message of the ``/v2/messages/{sourceDomainId}`` response.
    """

    #: Transfer status: ``"complete"`` or ``"pending_confirmations"``
    status: str

    #: CCTP source domain ID
    source_domain: int

    #: CCTP destination domain ID (from decoded message, 0 if unavailable)
    dest_domain: int

    #: Signed attestation bytes, or ``None`` if not yet available
    attestation: bytes | None

    #: Raw CCTP message bytes, or ``None`` if not yet available
    message: bytes | None

    #: Event nonce as string, or ``None`` if unavailable
    nonce: str | None

    #: Reason for delay, or ``None`` if no delay.
    delay_reason: str | None

    #: Transaction hash of the burn on the source chain
    transaction_hash: str

    #: CCTP protocol version (1 or 2)
    cctp_version: int | None = None

    @property
    def is_complete(self) -> bool:
        """Whether the attestation is signed and ready for ``receiveMessage()``."""
        return self.status == "complete" and self.attestation is not None and self.message is not None

    @property
    def is_pending(self) -> bool:
        return self.status == "pending_confirmations"

    @property
    def is_delayed(self) -> bool:
        return self.delay_reason is not None


def normalise_tx_hash(transaction_hash: str) -> str:
    """Iris API requires 0x-prefixed transaction hash."""
    if not transaction_hash.startswith("0x"):
        return f"0x{transaction_hash}"
    return transaction_hash


def parse_transfer_status(msg: dict, source_domain: int, transaction_hash: str) -> IrisTransferStatus:
    """Parse a single message object from the Iris V2 API response.

    :param msg:
        Message dict from the ``messages`` array in the API response.
    """
    status = msg.get("status", "")
    attestation_hex = msg.get("attestation")
    message_hex = msg.get("message", "")

    attestation_bytes = None
    if attestation_hex and attestation_hex != "PENDING":
        attestation_bytes = bytes.fromhex(attestation_hex.removeprefix("0x"))

    message_bytes = None
    if message_hex and message_hex != "0x":
        message_bytes = bytes.fromhex(message_hex.removeprefix("0x"))

    dest_domain = 0
    decoded = msg.get("decodedMessage") or {}
    value = decoded.get("destinationDomain")
    if value is not None and str(value).isdigit():
        dest_domain = int(value)

    return IrisTransferStatus(
        status=status,
        source_domain=source_domain,
        dest_domain=dest_domain,
        attestation=attestation_bytes,
        message=message_bytes,
        nonce=msg.get("eventNonce"),
        delay_reason=msg.get("delayReason"),
        transaction_hash=transaction_hash,
        cctp_version=msg.get("cctpVersion"),
    )


class IrisAttestationService(AttestationService):
    """:py:class:`AttestationService` backed by Circle's Iris API."""

    def __init__(self, api_url: str | None = None, session: IrisSession | None = None, timeout: float = DEFAULT_REQUEST_TIMEOUT):
        """
        :param api_url:
            Iris base URL. Ignored when ``session`` is given.

        :param session:
            Share one rate limited session between services.
        """
        if session is None:
            assert api_url, "Give api_url or session"
            session = create_iris_session(api_url)
        self.session = session
        self.timeout = timeout

    def __repr__(self):
        return f"<IrisAttestationService {self.session.api_url}>"

    @classmethod
    def for_network(cls, network: SupportedNetwork, api_url: str | None = None) -> "IrisAttestationService":
        """Iris sandbox for testnets, production Iris for mainnets."""
        return cls(api_url=api_url or network.deployment.iris_api_url)

    def get_messages_url(self, source_domain: int, transaction_hash: str) -> str:
        return f"{self.session.api_url}/v2/messages/{source_domain}?transactionHash={normalise_tx_hash(transaction_hash)}"

    def fetch_transfer_status(self, source_domain: int, transaction_hash: str) -> IrisTransferStatus | None:
        """One-shot check of a CCTP transfer's status.

        Does not block or retry beyond the session's connection retries.

        :return:
            ``None`` if the transaction is not indexed by Iris (HTTP 404).

        :raises requests.HTTPError:
            If the API returns an error other than 404.
        """
        transaction_hash = normalise_tx_hash(transaction_hash)
        url = self.get_messages_url(source_domain, transaction_hash)

        response = self.session.get(url, timeout=self.timeout)

        if response.status_code == HTTP_NOT_FOUND:
            logger.debug("Iris does not know %s on domain %d (404)", transaction_hash, source_domain)
            return None

        response.raise_for_status()

        data = response.json()
        messages = data.get("messages", [])

        if not messages:
            return None

        return parse_transfer_status(messages[0], source_domain, transaction_hash)

    def query_attestation(self, source_domain: int, burn_tx_hash: str) -> AttestationQuery:
        status = self.fetch_transfer_status(source_domain, burn_tx_hash)

        if status is None:
            return AttestationQuery(status=AttestationStatus.not_found)

        if status.is_complete:
            return AttestationQuery(
                status=AttestationStatus.complete,
                message=status.message,
                signature=status.attestation,
                nonce=status.nonce,
                raw_status=status.status,
            )

        return AttestationQuery(
            status=AttestationStatus.pending,
            nonce=status.nonce,
            delay_reason=status.delay_reason,
            raw_status=status.status,
        )
