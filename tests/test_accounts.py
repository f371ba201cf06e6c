from unittest import TestCase

from eth_account import Account as EthAccount
from eth_utils import is_checksum_address

from evm_workload.accounts import account_from_key, create_account, sign_transfer
from evm_workload.errors import MalformedError, SignatureError

from tests._fakes import TEST_KEY


class AccountsTest(TestCase):
    def test_create_account_key_matches_address(self):
        acct = create_account()
        self.assertTrue(is_checksum_address(acct.address))
        self.assertEqual(account_from_key(acct.private_key), acct)

    def test_bad_private_key(self):
        with self.assertRaises(SignatureError):
            account_from_key("0x1234")

    def test_sign_transfer_recovers_sender(self):
        sender = account_from_key(TEST_KEY)
        recipient = "0x" + "ab" * 20
        signed = sign_transfer(sender, recipient, 5, nonce=7, gas_price=10**9, chain_id=1337)

        self.assertTrue(signed.raw.startswith("0x"))
        self.assertEqual(len(signed.tx_hash), 66)
        self.assertEqual(EthAccount.recover_transaction(signed.raw), sender.address)

    def test_sign_transfer_is_deterministic(self):
        sender = account_from_key(TEST_KEY)
        a = sign_transfer(sender, "0x" + "ab" * 20, 1, nonce=0, gas_price=1, chain_id=1)
        b = sign_transfer(sender, "0x" + "ab" * 20, 1, nonce=0, gas_price=1, chain_id=1)
        self.assertEqual(a, b)

    def test_malformed_recipient(self):
        sender = account_from_key(TEST_KEY)
        for bad in ("0xdeadbeef", "not-an-address", ""):
            with self.assertRaises(MalformedError):
                sign_transfer(sender, bad, 1, nonce=0, gas_price=1, chain_id=1)
