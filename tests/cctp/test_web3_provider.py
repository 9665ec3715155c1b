"""Calldata encoding and receipt handling of the JSON-RPC wallet provider."""

from types import SimpleNamespace

import pytest
import requests
from eth_abi import decode
from eth_account import Account
from eth_utils import encode_hex, keccak
from web3.exceptions import TransactionNotFound

from triggvest.cctp.constants import FeeLevel, SupportedNetwork
from triggvest.cctp.errors import BroadcastUncertainError, ProviderError
from triggvest.cctp.receive import prepare_receive_message
from triggvest.cctp.state import AttestationRecord, ChainTransactionHandle, TransactionState
from triggvest.cctp.transfer import TransferRequest, prepare_approve_for_burn, prepare_deposit_for_burn
from triggvest.cctp.web3_provider import Web3WalletProvider, encode_function_call, parse_function_signature

RECIPIENT = "0x" + "ab" * 20

#: Anvil default account #0, test key only
TEST_PRIVATE_KEY = "0xac0974bec39a17e36ba4a6b4d238ff944bacb478cbed5efcae784d7bf4f2ff80"


@pytest.fixture()
def request_() -> TransferRequest:
    return TransferRequest.create(
        source_chain="ETH-SEPOLIA",
        destination_chain="BASE-SEPOLIA",
        amount="1",
        source_wallet_ref="wallet-1",
        destination_address=RECIPIENT,
        speed="fast",
    )


def test_parse_function_signature():
    """Names and argument types are split out of canonical signatures."""
    assert parse_function_signature("approve(address,uint256)") == ("approve", ["address", "uint256"])
    assert parse_function_signature("receiveMessage(bytes,bytes)") == ("receiveMessage", ["bytes", "bytes"])
    assert parse_function_signature("totalSupply()") == ("totalSupply", [])

    with pytest.raises(AssertionError):
        parse_function_signature("approve")


def test_encode_approve(request_):
    """approve() calldata is the ERC-20 selector and two words."""
    call = prepare_approve_for_burn(request_)
    data = encode_function_call(call.function_signature, call.parameters)

    assert data[:4].hex() == "095ea7b3"
    assert len(data) == 4 + 64
    spender, amount = decode(["address", "uint256"], data[4:])
    assert amount == 1_000_000
    assert spender.lower() == SupportedNetwork.eth_sepolia.deployment.token_messenger.lower()


def test_encode_deposit_for_burn(request_):
    """depositForBurn() encodes seven static arguments."""
    call = prepare_deposit_for_burn(request_)
    data = encode_function_call(call.function_signature, call.parameters)

    assert len(data) == 4 + 7 * 32
    values = decode(["uint256", "uint32", "bytes32", "address", "bytes32", "uint256", "uint32"], data[4:])
    assert values[0] == 1_000_000
    assert values[1] == 6
    assert values[6] == 0


def test_encode_receive_message():
    """receiveMessage() carries the message and signature as dynamic bytes."""
    attestation = AttestationRecord(0, "0x" + "cd" * 32, b"\x02" * 100, b"\x01" * 65)
    call = prepare_receive_message(attestation, SupportedNetwork.base_sepolia)
    data = encode_function_call(call.function_signature, call.parameters)

    message, signature = decode(["bytes", "bytes"], data[4:])
    assert message == b"\x02" * 100
    assert signature == b"\x01" * 65


def test_encode_argument_count():
    """Mismatched argument counts are caught before encoding."""
    with pytest.raises(AssertionError):
        encode_function_call("approve(address,uint256)", (RECIPIENT,))


def _provider(receipt=None) -> Web3WalletProvider:
    def _get_receipt(tx_hash):
        if receipt is None:
            raise TransactionNotFound(f"Transaction {tx_hash} not found")
        return receipt

    web3 = SimpleNamespace(eth=SimpleNamespace(get_transaction_receipt=_get_receipt))
    return Web3WalletProvider(web3s={SupportedNetwork.eth_sepolia: web3}, accounts={"wallet-1": Account.from_key(TEST_PRIVATE_KEY)})


@pytest.mark.parametrize(
    "receipt,expected",
    [
        (None, TransactionState.pending),
        ({"status": 1}, TransactionState.confirmed),
        ({"status": 0}, TransactionState.failed),
    ],
)
def test_receipt_status(receipt, expected):
    """Receipt status maps to the transaction state, no receipt is pending."""
    handle = ChainTransactionHandle("0x" + "11" * 32, SupportedNetwork.eth_sepolia)
    status = _provider(receipt).query_transaction_status(handle)
    assert status.state == expected
    assert status.chain_tx_hash == handle.transaction_id


def test_unknown_wallet_and_network():
    """Unconfigured wallets and networks are refused, not retried."""
    provider = _provider()

    with pytest.raises(ProviderError):
        provider.get_account("wallet-2")

    with pytest.raises(ProviderError):
        provider.get_web3(SupportedNetwork.base_sepolia)


def _sending_provider(send_raw_transaction) -> Web3WalletProvider:
    eth = SimpleNamespace(
        estimate_gas=lambda tx: 60_000,
        gas_price=10**9,
        get_balance=lambda address: 10**18,
        get_transaction_count=lambda address, block: 7,
        send_raw_transaction=send_raw_transaction,
    )
    web3 = SimpleNamespace(eth=eth)
    return Web3WalletProvider(web3s={SupportedNetwork.eth_sepolia: web3}, accounts={"wallet-1": Account.from_key(TEST_PRIVATE_KEY)})


def _approve(provider: Web3WalletProvider):
    deployment = SupportedNetwork.eth_sepolia.deployment
    return provider.submit_contract_call(
        "wallet-1",
        SupportedNetwork.eth_sepolia,
        deployment.usdc,
        "approve(address,uint256)",
        (deployment.token_messenger, 1_000_000),
        FeeLevel.medium,
    )


def test_broadcast_timeout_keeps_signed_hash():
    """A broadcast cut off by the connection reports the signed transaction hash."""
    sent = []

    def _timeout(raw_transaction):
        sent.append(bytes(raw_transaction))
        raise requests.Timeout("read timed out")

    with pytest.raises(BroadcastUncertainError) as exc_info:
        _approve(_sending_provider(_timeout))

    handle = exc_info.value.handle
    assert handle.network == SupportedNetwork.eth_sepolia
    assert handle.transaction_id == encode_hex(keccak(sent[0]))
    assert handle.chain_tx_hash == handle.transaction_id


def test_broadcast_rejected():
    """A node rejection is a plain refusal without a handle."""

    def _reject(raw_transaction):
        raise ValueError({"code": -32000, "message": "nonce too low"})

    with pytest.raises(ProviderError) as exc_info:
        _approve(_sending_provider(_reject))

    assert not isinstance(exc_info.value, BroadcastUncertainError)
