"""Bridge USDC between two chains with Circle CCTP V2.

Signs with a local private key over JSON-RPC. Transfer state is kept in
a JSON file, so an interrupted or pending transfer can be continued
by running the script again with ``ACTION=resume``.

Environment variables
---------------------

``ACTION``
    ``start`` (default), ``resume``, ``resume-all``, ``status`` or ``routes``.

``PRIVATE_KEY``
    Private key of the wallet holding the USDC and the gas tokens.
    The same key relays the mint on the destination chain.

``JSON_RPC_<NETWORK>``
    RPC URL for every network involved, network id with dashes
    replaced by underscores, e.g. ``JSON_RPC_ETH_SEPOLIA``, ``JSON_RPC_BASE_SEPOLIA``.

``SOURCE_CHAIN``, ``DESTINATION_CHAIN``
    E.g. ``ETH-SEPOLIA`` and ``BASE-SEPOLIA``. Same chain makes a plain transfer.

``AMOUNT``
    Human USDC amount, e.g. ``1.5``.

``SPEED``
    ``fast`` or ``standard`` (default).

``DESTINATION_ADDRESS``
    Recipient. Defaults to the wallet itself.

``CORRELATION_ID``
    Id of the transfer. Generated when starting if not given, required for ``resume``.

``STATE_FILE``
    Transfer state JSON file. Defaults to ``~/.triggvest/transfers.json``.

``LOG_LEVEL``
    Defaults to ``info``.

Example
-------

.. code-block:: shell

    PRIVATE_KEY=0x... \\
    JSON_RPC_ETH_SEPOLIA="https://..." \\
    JSON_RPC_BASE_SEPOLIA="https://..." \\
    SOURCE_CHAIN=ETH-SEPOLIA \\
    DESTINATION_CHAIN=BASE-SEPOLIA \\
    AMOUNT=1 \\
    SPEED=fast \\
    python scripts/cctp/bridge-usdc.py
"""

import logging
import os
from pathlib import Path

from eth_account import Account
from tabulate import tabulate
from web3 import HTTPProvider, Web3

from triggvest.cctp.bridge import TransferOrchestrator, get_supported_routes
from triggvest.cctp.config import BridgeConfig
from triggvest.cctp.constants import SupportedNetwork
from triggvest.cctp.monitor import IrisAttestationService
from triggvest.cctp.state import TransferResult
from triggvest.cctp.transfer import TransferRequest, quote_speed_tier
from triggvest.cctp.web3_provider import Web3WalletProvider
from triggvest.utils import setup_console_logging, shorten_hex

logger = logging.getLogger(__name__)

#: Wallet reference of the key given in ``PRIVATE_KEY``
WALLET_REF = "local"


def get_rpc_env_var(network: SupportedNetwork) -> str:
    return "JSON_RPC_" + network.value.replace("-", "_")


def create_web3s(networks: list[SupportedNetwork]) -> dict[SupportedNetwork, Web3]:
    web3s = {}
    for network in networks:
        env_var = get_rpc_env_var(network)
        url = os.environ.get(env_var)
        assert url, f"{env_var} environment variable is required"
        web3 = Web3(HTTPProvider(url))
        chain_id = web3.eth.chain_id
        assert chain_id == network.deployment.chain_id, f"{env_var} points to chain {chain_id}, expected {network.deployment.chain_id}"
        web3s[network] = web3
    return web3s


def print_results(results: list[TransferResult]):
    rows = [
        [
            r.correlation_id,
            r.status.value,
            r.phase.value,
            shorten_hex(r.burn_tx_hash),
            shorten_hex(r.mint_tx_id or r.direct_tx_id),
            r.next_step or r.message,
        ]
        for r in results
    ]
    print(tabulate(rows, headers=["Transfer", "Status", "Phase", "Burn tx", "Mint tx", "Next"], tablefmt="simple"))


def main():
    setup_console_logging("info", coloured_threads=True)

    action = os.environ.get("ACTION", "start").lower()

    if action == "routes":
        rows = [[s.value, d.value] for s, d in get_supported_routes()]
        print(tabulate(rows, headers=["Source", "Destination"], tablefmt="simple"))
        for speed in ("fast", "standard"):
            quote = quote_speed_tier(speed)
            print(f"{speed}: fee ~{quote.fee} USDC, ~{quote.estimated_seconds}s, {quote.security}")
        return

    config = BridgeConfig.from_env()
    state_file = os.environ.get("STATE_FILE") or config.state_file or "~/.triggvest/transfers.json"
    config.state_file = Path(state_file).expanduser().absolute()

    private_key = os.environ.get("PRIVATE_KEY")
    assert private_key, "PRIVATE_KEY environment variable is required"
    account = Account.from_key(private_key)

    if action == "start":
        source = SupportedNetwork.parse(os.environ["SOURCE_CHAIN"])
        destination = SupportedNetwork.parse(os.environ["DESTINATION_CHAIN"])
        networks = list({source, destination})
    else:
        networks = [n for n in SupportedNetwork if os.environ.get(get_rpc_env_var(n))]
        assert networks, "Give JSON_RPC_<NETWORK> for the networks of the transfers to resume"
        source = networks[0]

    provider = Web3WalletProvider(web3s=create_web3s(networks), accounts={WALLET_REF: account})
    orchestrator = TransferOrchestrator(
        provider=provider,
        attestation_service=IrisAttestationService.for_network(source, api_url=config.iris_api_url),
        config=config,
    )

    print(f"Wallet {account.address}, state file {config.state_file}")

    if action == "start":
        request = TransferRequest.create(
            source_chain=source,
            destination_chain=destination,
            amount=os.environ["AMOUNT"],
            source_wallet_ref=WALLET_REF,
            destination_address=os.environ.get("DESTINATION_ADDRESS") or account.address,
            speed=os.environ.get("SPEED", "standard"),
            correlation_id=os.environ.get("CORRELATION_ID") or None,
        )
        print(f"Transfer {request.correlation_id}: {request.amount} USDC {source.value} -> {destination.value} ({request.speed.value})")
        print_results([orchestrator.start_transfer(request)])

    elif action == "resume":
        correlation_id = os.environ.get("CORRELATION_ID")
        assert correlation_id, "CORRELATION_ID environment variable is required for resume"
        print_results([orchestrator.resume_transfer(correlation_id)])

    elif action == "resume-all":
        print_results(orchestrator.resume_outstanding(progress=True))

    elif action == "status":
        rows = [
            [s.correlation_id, s.phase.value, s.request.source_chain.value, s.request.destination_chain.value, s.request.amount, s.last_error or ""]
            for s in orchestrator.list_transfers(include_terminal=True)
        ]
        print(tabulate(rows, headers=["Transfer", "Phase", "From", "To", "USDC", "Last error"], tablefmt="simple"))

    else:
        raise AssertionError(f"Unknown ACTION {action}")


if __name__ == "__main__":
    main()
