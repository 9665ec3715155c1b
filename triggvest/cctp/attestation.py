"""Poll for Circle's attestation of a confirmed burn.

After ``depositForBurn()`` confirms on the source chain, Circle's
attestation service signs the burn event. The signed message is what
``receiveMessage()`` needs on the destination chain.

The attestation goes through these Iris API statuses:

- **404**: transaction not yet indexed by Circle, or never will be
  because the domain and hash do not match
- **pending_confirmations**: burn detected, waiting for block finality
- **complete**: attestation signed and ready

How long to wait depends on the speed tier: a fast transfer is attested
after soft finality, a standard transfer waits for hard finality.

Example::

    from triggvest.cctp.attestation import AttestationPoller
    from triggvest.cctp.config import BridgeConfig
    from triggvest.cctp.monitor import IrisAttestationService

    poller = AttestationPoller(IrisAttestationService("https://iris-api-sandbox.circle.com"), BridgeConfig())
    result = poller.poll(source_domain=0, burn_tx_hash="0x...", speed=SpeedTier.fast)
"""

import logging
import threading
from typing import Callable

from triggvest.cctp.config import BridgeConfig
from triggvest.cctp.constants import CCTP_DOMAIN_NAMES, SpeedTier
from triggvest.cctp.provider import AttestationQuery, AttestationService, AttestationStatus
from triggvest.cctp.retry import ErrorClass, call_with_retry, classify_error
from triggvest.cctp.state import AttestationOutcome, AttestationRecord, AttestationResult
from triggvest.utils import SYSTEM_CLOCK, Clock

logger = logging.getLogger(__name__)

#: Range CCTP explorer base URL for transaction status lookup
CCTP_EXPLORER_BASE_URL = "https://usdc.range.org/status"

#: CCTP domain ID → Range explorer chain slug, mainnets only
_DOMAIN_TO_EXPLORER_CHAIN: dict[int, str] = {
    0: "ethereum",
    1: "avalanche",
    2: "optimism",
    3: "arbitrum",
    6: "base",
    7: "polygon",
}

#: Progress callback ``(status, attempt)``
PhaseCallback = Callable[[str, int], None]


def cctp_explorer_url(source_domain: int, transaction_hash: str, testnet: bool = False) -> str | None:
    """Build a Range CCTP explorer URL for a burn transaction, or None if unknown chain."""
    chain = _DOMAIN_TO_EXPLORER_CHAIN.get(source_domain)
    if chain is None or testnet:
        return None
    return f"{CCTP_EXPLORER_BASE_URL}?id={chain}/{transaction_hash}"


class AttestationPoller:
    """Bounded polling of an :py:class:`AttestationService`."""

    def __init__(self, service: AttestationService, config: BridgeConfig, clock: Clock = SYSTEM_CLOCK):
        self.service = service
        self.config = config
        self.clock = clock

    def poll(
        self,
        source_domain: int,
        burn_tx_hash: str,
        speed: SpeedTier,
        on_phase_change: PhaseCallback | None = None,
        cancel_event: threading.Event | None = None,
        testnet: bool = False,
    ) -> AttestationResult:
        """Poll until the attestation is ready, the tier budget runs out, or the burn is unknown.

        The tier budget comes from :py:meth:`BridgeConfig.get_attestation_tier`.
        We never sleep past it.

        A fresh burn can be unknown to Iris for a few seconds before it is indexed,
        so a 404 answer becomes ``not_found`` only after the hash has stayed unknown
        for the tier's ``not_found_grace``, or when the budget runs out while
        the last answer was still 404.

        :param on_phase_change:
            Optional callback invoked on every poll attempt.
            Receives ``(status, attempt)`` where *status* is one of
            ``"waiting_for_indexing"``, ``"pending_confirmations"``, or
            ``"complete"`` and *attempt* is the number of queries made so far.

        :param cancel_event:
            Stop polling at the next wake-up and report ``pending``.

        :return:
            ``received`` with the attestation, ``pending`` (resume later)
            or ``not_found`` (terminal)
        """
        tier = self.config.get_attestation_tier(speed)
        domain_name = CCTP_DOMAIN_NAMES.get(source_domain, f"domain-{source_domain}")
        explorer_url = cctp_explorer_url(source_domain, burn_tx_hash, testnet)

        explorer_suffix = f"\n  Explorer: {explorer_url}" if explorer_url else ""
        logger.info(
            "Waiting for CCTP attestation on %s: tx=%s, speed=%s, timeout=%.0fs%s",
            domain_name,
            burn_tx_hash,
            speed.value,
            tier.timeout,
            explorer_suffix,
        )

        started_at = self.clock.time()
        deadline = started_at + tier.timeout
        attempt = 0
        unknown_since: float | None = None
        last_status: str | None = None

        def _notify(status: str):
            nonlocal last_status
            last_status = status
            if on_phase_change is not None:
                on_phase_change(status, attempt)

        def _result(outcome: AttestationOutcome, attestation: AttestationRecord | None = None) -> AttestationResult:
            return AttestationResult(outcome=outcome, attestation=attestation, detail=last_status, attempts=attempt)

        _notify("waiting_for_indexing")

        while True:
            if cancel_event is not None and cancel_event.is_set():
                logger.info("Attestation polling for %s cancelled", burn_tx_hash)
                return _result(AttestationOutcome.pending)

            attempt += 1
            # First attempt at INFO so the user sees the poll started,
            # then DEBUG to avoid drowning out the tqdm progress bar.
            log_level = logging.INFO if attempt == 1 else logging.DEBUG
            logger.log(
                log_level,
                "Polling CCTP attestation: %s (domain %s), tx=%s, attempt=%d, elapsed=%.1fs, status=%s",
                domain_name,
                source_domain,
                burn_tx_hash,
                attempt,
                self.clock.time() - started_at,
                last_status or "unknown",
            )

            query = self._query(source_domain, burn_tx_hash, deadline, cancel_event)
            now = self.clock.time()

            if query is not None:
                if query.is_complete:
                    _notify("complete")
                    logger.info(
                        "Attestation complete for %s after %d attempts (%.1fs): tx=%s",
                        domain_name,
                        attempt,
                        now - started_at,
                        burn_tx_hash,
                    )
                    record = AttestationRecord(
                        source_domain=source_domain,
                        burn_tx_hash=burn_tx_hash,
                        message=query.message,
                        signature=query.signature,
                        nonce=query.nonce,
                    )
                    return _result(AttestationOutcome.received, record)

                elif query.status == AttestationStatus.not_found:
                    if unknown_since is None:
                        unknown_since = now
                    _notify("waiting_for_indexing")
                    if now - unknown_since >= tier.not_found_grace:
                        logger.warning(
                            "Burn %s unknown to the attestation service on %s for %.0fs, giving up",
                            burn_tx_hash,
                            domain_name,
                            now - unknown_since,
                        )
                        return _result(AttestationOutcome.not_found)

                else:
                    unknown_since = None
                    _notify(query.delay_reason or query.raw_status or "pending_confirmations")
                    logger.debug("Attestation status for %s: %s, delay reason %s", domain_name, query.raw_status, query.delay_reason)

            remaining = deadline - now
            if remaining <= 0:
                if unknown_since is not None:
                    logger.warning("Burn %s still unknown to the attestation service after %.0fs", burn_tx_hash, tier.timeout)
                    return _result(AttestationOutcome.not_found)
                logger.info("Attestation for %s not ready after %.0fs, still pending", burn_tx_hash, tier.timeout)
                return _result(AttestationOutcome.pending)

            if self.clock.sleep(min(tier.poll_interval, remaining), cancel_event):
                logger.info("Attestation polling for %s cancelled", burn_tx_hash)
                return _result(AttestationOutcome.pending)

    def _query(self, source_domain: int, burn_tx_hash: str, deadline: float, cancel_event: threading.Event | None) -> AttestationQuery | None:
        """One lookup with retries that end by the deadline. ``None`` when the service stayed unreachable."""
        try:
            return call_with_retry(
                lambda: self.service.query_attestation(source_domain, burn_tx_hash),
                f"Query attestation of {burn_tx_hash}",
                retry_config=self.config.retry,
                clock=self.clock,
                deadline=deadline,
                cancel_event=cancel_event,
            )
        except Exception as e:
            if classify_error(e) == ErrorClass.terminal:
                raise
            logger.warning("Attestation service unreachable for %s, will poll again: %s", burn_tx_hash, e)
            return None
