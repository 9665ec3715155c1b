"""Wallet provider signing with local accounts over JSON-RPC.

For scripts, tests against forks, and deployments without a custodial
wallet API. Wallet references map to :py:class:`LocalAccount` instances
supplied by the caller; this module never generates or stores keys.

Example::

    from eth_account import Account
    from web3 import HTTPProvider, Web3

    provider = Web3WalletProvider(
        web3s={SupportedNetwork.eth_sepolia: Web3(HTTPProvider(os.environ["JSON_RPC_ETH_SEPOLIA"]))},
        accounts={"wallet-1": Account.from_key(os.environ["PRIVATE_KEY"])},
    )
"""

import logging
import threading
from decimal import Decimal

import requests
from eth_abi import decode, encode
from eth_account.signers.local import LocalAccount
from eth_typing import HexAddress
from eth_utils import encode_hex, function_signature_to_4byte_selector, to_checksum_address
from hexbytes import HexBytes
from web3 import Web3
from web3.exceptions import ContractLogicError, TransactionNotFound, Web3Exception

from triggvest.cctp.constants import FeeLevel, SupportedNetwork
from triggvest.cctp.errors import BroadcastUncertainError, InsufficientGasError, ProviderError, TransientProviderError
from triggvest.cctp.provider import WalletProvider
from triggvest.cctp.state import ChainTransactionHandle, TransactionState, TransactionStatus
from triggvest.cctp.transfer import TRANSFER_SIGNATURE, from_raw_amount

logger = logging.getLogger(__name__)

#: Gas price multiplier per fee priority
DEFAULT_GAS_PRICE_MULTIPLIERS: dict[FeeLevel, float] = {
    FeeLevel.low: 1.0,
    FeeLevel.medium: 1.1,
    FeeLevel.high: 1.3,
}

#: Gas limit headroom over ``eth_estimateGas``
DEFAULT_GAS_LIMIT_MARGIN = 1.2

#: ERC-20 read calls
BALANCE_OF_SIGNATURE = "balanceOf(address)"
ALLOWANCE_SIGNATURE = "allowance(address,address)"


def parse_function_signature(function_signature: str) -> tuple[str, list[str]]:
    """Split ``name(type1,type2)`` to name and argument types.

    Tuple arguments are not supported.
    """
    assert function_signature.endswith(")") and "(" in function_signature, f"Bad function signature {function_signature}"
    name, args = function_signature[:-1].split("(", 1)
    assert "(" not in args, f"Tuple arguments not supported: {function_signature}"
    types = [t.strip() for t in args.split(",")] if args else []
    return name, types


def encode_function_call(function_signature: str, parameters: tuple | list) -> bytes:
    """ABI encode calldata: 4-byte selector followed by the encoded arguments."""
    _, types = parse_function_signature(function_signature)
    assert len(types) == len(parameters), f"{function_signature} takes {len(types)} arguments, got {len(parameters)}"
    return function_signature_to_4byte_selector(function_signature) + encode(types, list(parameters))


class Web3WalletProvider(WalletProvider):
    """:py:class:`WalletProvider` over one :py:class:`Web3` connection per network.

    - Legacy gas pricing, ``eth_gasPrice`` times the fee level multiplier
    - Nonces are allocated locally per account and network, so back-to-back
      submissions from the same wallet do not collide
    """

    def __init__(
        self,
        web3s: dict[SupportedNetwork, Web3],
        accounts: dict[str, LocalAccount],
        gas_price_multipliers: dict[FeeLevel, float] | None = None,
        gas_limit_margin: float = DEFAULT_GAS_LIMIT_MARGIN,
    ):
        self.web3s = web3s
        self.accounts = accounts
        self.gas_price_multipliers = gas_price_multipliers or DEFAULT_GAS_PRICE_MULTIPLIERS
        self.gas_limit_margin = gas_limit_margin
        self._nonces: dict[tuple[str, SupportedNetwork], int] = {}
        self._nonce_lock = threading.Lock()

    def __repr__(self):
        return f"<Web3WalletProvider networks={[n.value for n in self.web3s]} wallets={list(self.accounts)}>"

    def get_web3(self, network: SupportedNetwork) -> Web3:
        web3 = self.web3s.get(network)
        if web3 is None:
            raise ProviderError(f"No JSON-RPC connection configured for {network.value}")
        return web3

    def get_account(self, wallet_ref: str) -> LocalAccount:
        account = self.accounts.get(wallet_ref)
        if account is None:
            raise ProviderError(f"Unknown wallet {wallet_ref}")
        return account

    def _allocate_nonce(self, web3: Web3, address: HexAddress, network: SupportedNetwork) -> int:
        key = (address, network)
        with self._nonce_lock:
            nonce = self._nonces.get(key)
            if nonce is None:
                nonce = web3.eth.get_transaction_count(address, "pending")
            self._nonces[key] = nonce + 1
            return nonce

    def _forget_nonce(self, address: HexAddress, network: SupportedNetwork):
        with self._nonce_lock:
            self._nonces.pop((address, network), None)

    def _call(self, network: SupportedNetwork, to: HexAddress | str, data: bytes) -> bytes:
        web3 = self.get_web3(network)
        try:
            return web3.eth.call({"to": to_checksum_address(to), "data": encode_hex(data)})
        except (requests.ConnectionError, requests.Timeout) as e:
            raise TransientProviderError(f"RPC unreachable on {network.value}: {e}") from e

    def _send(self, wallet_ref: str, network: SupportedNetwork, to: HexAddress | str, data: bytes, fee_level: FeeLevel) -> ChainTransactionHandle:
        web3 = self.get_web3(network)
        account = self.get_account(wallet_ref)
        deployment = network.deployment

        tx = {
            "from": account.address,
            "to": to_checksum_address(to),
            "data": encode_hex(data),
            "value": 0,
            "chainId": deployment.chain_id,
        }

        try:
            gas_estimate = web3.eth.estimate_gas(tx)
            gas_price = int(web3.eth.gas_price * self.gas_price_multipliers[fee_level])
            balance = web3.eth.get_balance(account.address)
        except ContractLogicError as e:
            raise ProviderError(f"Transaction to {to} on {network.value} would revert: {e}") from e
        except (requests.ConnectionError, requests.Timeout) as e:
            raise TransientProviderError(f"RPC unreachable on {network.value}: {e}") from e

        gas_limit = int(gas_estimate * self.gas_limit_margin)
        cost = gas_limit * gas_price
        if balance < cost:
            raise InsufficientGasError(
                deployment.gas_symbol,
                Decimal(balance) / 10**18,
                Decimal(cost) / 10**18,
                network=network.value,
            )

        tx.update(gas=gas_limit, gasPrice=gas_price, nonce=self._allocate_nonce(web3, account.address, network))
        signed = account.sign_transaction(tx)
        signed_hash_hex = encode_hex(signed.hash)

        try:
            tx_hash = HexBytes(web3.eth.send_raw_transaction(signed.raw_transaction))
        except (ValueError, Web3Exception) as e:
            self._forget_nonce(account.address, network)
            raise ProviderError(f"{network.value} rejected transaction from {account.address}: {e}") from e
        except (requests.ConnectionError, requests.Timeout) as e:
            # The node may have the transaction already
            self._forget_nonce(account.address, network)
            handle = ChainTransactionHandle(transaction_id=signed_hash_hex, network=network, chain_tx_hash=signed_hash_hex)
            raise BroadcastUncertainError(f"Broadcast of {signed_hash_hex} on {network.value} did not complete: {e}", handle) from e

        tx_hash_hex = encode_hex(tx_hash)
        logger.info("Broadcasted %s from %s on %s, nonce %d, gas %d", tx_hash_hex, account.address, network.value, tx["nonce"], gas_limit)
        return ChainTransactionHandle(transaction_id=tx_hash_hex, network=network, chain_tx_hash=tx_hash_hex)

    def submit_contract_call(
        self,
        wallet_ref: str,
        network: SupportedNetwork,
        contract_address: HexAddress | str,
        function_signature: str,
        parameters: tuple,
        fee_level: FeeLevel,
    ) -> ChainTransactionHandle:
        data = encode_function_call(function_signature, parameters)
        return self._send(wallet_ref, network, contract_address, data, fee_level)

    def submit_token_transfer(
        self,
        wallet_ref: str,
        network: SupportedNetwork,
        token_address: HexAddress | str,
        destination: HexAddress | str,
        amount_raw: int,
        fee_level: FeeLevel,
    ) -> ChainTransactionHandle:
        data = encode_function_call(TRANSFER_SIGNATURE, (to_checksum_address(destination), amount_raw))
        return self._send(wallet_ref, network, token_address, data, fee_level)

    def query_transaction_status(self, handle: ChainTransactionHandle) -> TransactionStatus:
        web3 = self.get_web3(handle.network)
        try:
            receipt = web3.eth.get_transaction_receipt(handle.transaction_id)
        except TransactionNotFound:
            return TransactionStatus(TransactionState.pending, chain_tx_hash=handle.transaction_id)
        except (requests.ConnectionError, requests.Timeout) as e:
            raise TransientProviderError(f"RPC unreachable on {handle.network.value}: {e}") from e

        state = TransactionState.confirmed if receipt["status"] == 1 else TransactionState.failed
        return TransactionStatus(state, chain_tx_hash=handle.transaction_id)

    def query_token_balance(self, wallet_ref: str, network: SupportedNetwork, token_symbol: str) -> Decimal:
        account = self.get_account(wallet_ref)
        deployment = network.deployment

        if token_symbol == "USDC":
            result = self._call(network, deployment.usdc, encode_function_call(BALANCE_OF_SIGNATURE, (account.address,)))
            (raw,) = decode(["uint256"], result)
            return from_raw_amount(raw)
        elif token_symbol == deployment.gas_symbol:
            try:
                raw = self.get_web3(network).eth.get_balance(account.address)
            except (requests.ConnectionError, requests.Timeout) as e:
                raise TransientProviderError(f"RPC unreachable on {network.value}: {e}") from e
            return Decimal(raw) / 10**18
        else:
            raise ProviderError(f"Unsupported token {token_symbol} on {network.value}")

    def query_allowance(self, wallet_ref: str, network: SupportedNetwork, token_address: HexAddress | str, spender: HexAddress | str) -> int:
        account = self.get_account(wallet_ref)
        data = encode_function_call(ALLOWANCE_SIGNATURE, (account.address, to_checksum_address(spender)))
        (raw,) = decode(["uint256"], self._call(network, token_address, data))
        return raw
