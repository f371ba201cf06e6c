"""Key generation and transfer signing."""

from dataclasses import dataclass

from eth_account import Account as EthAccount
from eth_utils import is_address, to_checksum_address, to_hex

from evm_workload.constants import TRANSFER_GAS
from evm_workload.errors import MalformedError, SignatureError
from evm_workload.models import Account


@dataclass(frozen=True, slots=True)
class SignedTransfer:
    raw: str  # 0x-prefixed RLP
    tx_hash: str


def create_account() -> Account:
    acct = EthAccount.create()
    return Account(address=acct.address, private_key=to_hex(acct.key))


def generate_accounts(count: int) -> list[Account]:
    return [create_account() for _ in range(count)]


def account_from_key(private_key: str) -> Account:
    try:
        acct = EthAccount.from_key(private_key)
    except Exception as e:  # eth-keys raises its own ValidationError
        raise SignatureError(f"Unusable private key: {e}") from e
    return Account(address=acct.address, private_key=to_hex(acct.key))


def sign_transfer(
    sender: Account,
    recipient: str,
    value: int,
    *,
    nonce: int,
    gas_price: int,
    chain_id: int,
    gas: int = TRANSFER_GAS,
) -> SignedTransfer:
    """Sign a legacy value transfer.

    Raises MalformedError for a bad recipient and SignatureError for anything
    that goes wrong while signing.
    """
    if not is_address(recipient):
        raise MalformedError(f"Invalid recipient address: {recipient!r}")

    tx = {
        "to": to_checksum_address(recipient),
        "value": value,
        "nonce": nonce,
        "gas": gas,
        "gasPrice": gas_price,
        "chainId": chain_id,
    }
    try:
        signed = EthAccount.sign_transaction(tx, sender.private_key)
    except Exception as e:
        raise SignatureError(f"Failed to sign transfer from {sender.address}: {e}") from e
    return SignedTransfer(raw=to_hex(signed.raw_transaction), tx_hash=to_hex(signed.hash))
