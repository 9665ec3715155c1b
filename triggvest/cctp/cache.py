"""Short lived wallet balance cache.

Pre-flight balance checks of many parallel transfers from the same wallet
would otherwise hit the provider once per transfer.
"""

import logging
import threading
from decimal import Decimal
from typing import Callable

from triggvest.cctp.constants import SupportedNetwork
from triggvest.utils import SYSTEM_CLOCK, Clock

logger = logging.getLogger(__name__)


#: (wallet ref, network, token symbol)
BalanceKey = tuple[str, SupportedNetwork, str]


class BalanceCache:
    """Time-to-live cache of token balances.

    Entries expire ``ttl`` seconds after they were fetched, measured on
    the injected clock. Submissions invalidate the wallet's entries.
    """

    def __init__(self, ttl: float = 30.0, clock: Clock = SYSTEM_CLOCK):
        assert ttl >= 0, f"Bad TTL {ttl}"
        self.ttl = ttl
        self.clock = clock
        self._entries: dict[BalanceKey, tuple[float, Decimal]] = {}
        self._lock = threading.Lock()

    def get(self, key: BalanceKey) -> Decimal | None:
        """Cached balance, or ``None`` if missing or expired."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            fetched_at, value = entry
            if self.clock.time() - fetched_at >= self.ttl:
                del self._entries[key]
                return None
            return value

    def put(self, key: BalanceKey, value: Decimal):
        with self._lock:
            self._entries[key] = (self.clock.time(), value)

    def get_or_fetch(self, key: BalanceKey, fetch: Callable[[], Decimal]) -> Decimal:
        """Return the cached balance or call ``fetch`` and cache its result."""
        value = self.get(key)
        if value is not None:
            logger.debug("Balance cache hit %s: %s", key, value)
            return value
        value = fetch()
        self.put(key, value)
        return value

    def invalidate(self, wallet_ref: str, network: SupportedNetwork | None = None):
        """Drop cached balances of a wallet, optionally only on one network."""
        with self._lock:
            for key in list(self._entries):
                if key[0] == wallet_ref and (network is None or key[1] == network):
                    del self._entries[key]

    def clear(self):
        with self._lock:
            self._entries.clear()

    def __len__(self):
        with self._lock:
            return len(self._entries)
