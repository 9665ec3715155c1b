"""Circle CCTP V2 cross-chain USDC transfers.

- Orchestrator: :py:mod:`triggvest.cctp.bridge`
- Networks and contract addresses: :py:mod:`triggvest.cctp.constants`
- Requests and call encoding: :py:mod:`triggvest.cctp.transfer`
"""
