"""TriggVest: event-triggered cross-chain USDC transfers.

The bridge core lives in :py:mod:`triggvest.cctp`.
"""
