import base64
import unittest

from django.conf import settings
from django.test import TestCase
from solders.compute_budget import set_compute_unit_limit, set_compute_unit_price
from solders.hash import Hash
from solders.keypair import Keypair
from solders.message import MessageV0, to_bytes_versioned
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.transaction import VersionedTransaction
from spl.memo.constants import MEMO_PROGRAM_ID
from spl.token.constants import ASSOCIATED_TOKEN_PROGRAM_ID, TOKEN_PROGRAM_ID
from spl.token.instructions import (
    TransferCheckedParams,
    get_associated_token_address,
    transfer_checked,
)

from payflix.chain import ConfirmationResult
from payflix.errors import RpcUnavailable
from payflix.facilitator import (
    COMPUTE_BUDGET_PROGRAM_ID,
    FacilitatorGateway,
    extract_transaction_b64,
    transaction_nonce,
)
from payflix.models import X402Authorization
from payflix.testing import FakeChainClient


class Ix:
    def __init__(self, program_id_index, accounts, data):
        self.program_id_index = program_id_index
        self.accounts = accounts
        self.data = data


def make_tx(account_keys, instructions):
    message = type('Msg', (), {'instructions': instructions, 'account_keys': account_keys})
    return type('Tx', (), {'message': message})


class InstructionLayoutTests(unittest.TestCase):
    def setUp(self) -> None:
        self.facilitator = Keypair()
        self.gateway = FacilitatorGateway(
            chain=FakeChainClient(),
            facilitator=self.facilitator,
            network='solana-devnet',
            usdc_mint=settings.PAYFLIX_USDC_MINT,
        )
        self.pay_to = Pubkey.new_unique()
        self.mint = Pubkey.from_string(settings.PAYFLIX_USDC_MINT)
        self.dest = get_associated_token_address(self.pay_to, self.mint)
        self.source = Pubkey.new_unique()
        self.authority = Pubkey.new_unique()
        self.keys = [
            self.facilitator.pubkey(),
            COMPUTE_BUDGET_PROGRAM_ID,
            TOKEN_PROGRAM_ID,
            ASSOCIATED_TOKEN_PROGRAM_ID,
            MEMO_PROGRAM_ID,
            self.source,
            self.mint,
            self.dest,
            self.authority,
            self.pay_to,
        ]
        self.requirements = {
            'scheme': 'exact',
            'network': 'solana-devnet',
            'asset': settings.PAYFLIX_USDC_MINT,
            'payTo': str(self.pay_to),
            'maxAmountRequired': '1000',
        }
        self.cb_limit = Ix(1, [], bytes([2]) + (200_000).to_bytes(4, 'little'))
        self.cb_price = Ix(1, [], bytes([3]) + (1_000_000).to_bytes(8, 'little'))

    def _transfer(self, amount=1000, accounts=(5, 6, 7, 8)):
        return Ix(2, list(accounts), bytes([12]) + amount.to_bytes(8, 'little') + bytes([6]))

    def _check(self, instructions, keys=None):
        return self.gateway.check_instructions(
            make_tx(keys or self.keys, instructions), self.requirements)

    def test_minimal_layout(self):
        error, details = self._check([self.cb_limit, self.cb_price, self._transfer()])
        self.assertIsNone(error)
        self.assertEqual(details['amount'], 1000)
        self.assertEqual(details['authority'], str(self.authority))

    def test_ata_create_and_memo_allowed(self):
        ata = Ix(3, [8, 7, 9, 6], b'')
        memo = Ix(4, [], b'order-42')
        error, _ = self._check([self.cb_limit, self.cb_price, ata, self._transfer(), memo])
        self.assertIsNone(error)

    def test_ata_create_after_transfer_rejected(self):
        ata = Ix(3, [8, 7, 9, 6], b'')
        error, _ = self._check([self.cb_limit, self.cb_price, self._transfer(), ata])
        self.assertIn('before TransferChecked', error)

    def test_fee_payer_must_lead(self):
        keys = list(self.keys)
        keys[0] = Pubkey.new_unique()
        error, _ = self._check([self.cb_limit, self.cb_price, self._transfer()], keys=keys)
        self.assertIn('Fee payer mismatch', error)

    def test_fee_payer_in_instruction_accounts(self):
        error, _ = self._check(
            [self.cb_limit, self.cb_price, self._transfer(accounts=(5, 6, 7, 0))])
        self.assertEqual(error, 'Fee payer must not appear in instruction accounts')

    def test_compute_budget_first(self):
        error, _ = self._check([self._transfer(), self.cb_limit, self.cb_price])
        self.assertIn('ComputeBudget', error)

    def test_compute_unit_price_cap(self):
        expensive = Ix(1, [], bytes([3]) + (10_000_000).to_bytes(8, 'little'))
        error, _ = self._check([self.cb_limit, expensive, self._transfer()])
        self.assertIn('exceeds maximum', error)

    def test_amount_mismatch(self):
        error, _ = self._check([self.cb_limit, self.cb_price, self._transfer(amount=999)])
        self.assertIn('Amount mismatch', error)

    def test_destination_mismatch(self):
        error, _ = self._check(
            [self.cb_limit, self.cb_price, self._transfer(accounts=(5, 6, 5, 8))])
        self.assertIn('Destination mismatch', error)

    def test_double_transfer_rejected(self):
        error, _ = self._check(
            [self.cb_limit, self.cb_price, self._transfer(), self._transfer()])
        self.assertIn('Multiple TransferChecked', error)

    def test_missing_transfer(self):
        error, _ = self._check([self.cb_limit, self.cb_price, Ix(4, [], b'memo')])
        self.assertEqual(error, 'Missing TransferChecked instruction')

    def test_unknown_program_rejected(self):
        error, _ = self._check([self.cb_limit, self.cb_price, Ix(9, [], b''), self._transfer()])
        self.assertIn('Unexpected instruction', error)


class PayloadHelperTests(unittest.TestCase):
    def test_extract_transaction(self):
        self.assertEqual(extract_transaction_b64({'payload': {'transaction': 'AA=='}}), 'AA==')
        self.assertEqual(
            extract_transaction_b64({'payload': {'serializedTransaction': 'AQ=='}}), 'AQ==')
        self.assertEqual(extract_transaction_b64({'payload': 'Ag=='}), 'Ag==')
        self.assertIsNone(extract_transaction_b64({}))

    def test_nonce_is_stable(self):
        self.assertEqual(transaction_nonce('AAEC'), transaction_nonce('AAEC'))
        self.assertTrue(transaction_nonce('AAEC').startswith('solana:'))
        self.assertNotEqual(transaction_nonce('AAEC'), transaction_nonce('AAED'))


class FacilitatorGatewayTests(TestCase):
    def setUp(self) -> None:
        self.facilitator = Keypair()
        self.payer = Keypair()
        self.pay_to = Keypair().pubkey()
        self.mint = Pubkey.from_string(settings.PAYFLIX_USDC_MINT)
        self.chain = FakeChainClient()
        self.gateway = FacilitatorGateway(
            chain=self.chain,
            facilitator=self.facilitator,
            network='solana-devnet',
            usdc_mint=settings.PAYFLIX_USDC_MINT,
        )
        self.requirements = {
            'scheme': 'exact',
            'network': 'solana-devnet',
            'asset': settings.PAYFLIX_USDC_MINT,
            'payTo': str(self.pay_to),
            'maxAmountRequired': '250000',
            'extra': {'feePayer': str(self.facilitator.pubkey())},
        }
        self.payload = {'x402Version': 1, 'scheme': 'exact',
                        'payload': {'transaction': self._signed_transfer(250_000)}}

    def _signed_transfer(self, amount: int) -> str:
        transfer = transfer_checked(TransferCheckedParams(
            program_id=TOKEN_PROGRAM_ID,
            source=get_associated_token_address(self.payer.pubkey(), self.mint),
            mint=self.mint,
            dest=get_associated_token_address(self.pay_to, self.mint),
            owner=self.payer.pubkey(),
            amount=amount,
            decimals=6,
        ))
        message = MessageV0.try_compile(
            self.facilitator.pubkey(),
            [set_compute_unit_limit(200_000), set_compute_unit_price(1_000_000), transfer],
            [],
            Hash.default(),
        )
        tx = VersionedTransaction.populate(
            message,
            [Signature.default(), self.payer.sign_message(to_bytes_versioned(message))],
        )
        return base64.b64encode(bytes(tx)).decode()

    def test_supported(self):
        self.assertEqual(self.gateway.supported(),
                         [{'x402Version': 1, 'scheme': 'exact', 'network': 'solana-devnet'}])

    def test_verify_records_authorization(self):
        result = self.gateway.verify(self.payload, self.requirements)

        self.assertTrue(result.is_valid, result.invalid_reason)
        self.assertEqual(result.payer, str(self.payer.pubkey()))
        record = X402Authorization.objects.get()
        self.assertEqual(record.amount_units, 250_000)
        self.assertEqual(record.status, X402Authorization.Status.VERIFIED)

    def test_verify_rejects_replay(self):
        self.gateway.verify(self.payload, self.requirements)
        result = self.gateway.verify(self.payload, self.requirements)
        self.assertFalse(result.is_valid)
        self.assertEqual(result.invalid_reason, 'Authorization nonce already processed.')

    def test_verify_rejects_requirement_mismatch(self):
        cases = {
            'asset': str(Pubkey.new_unique()),
            'network': 'solana',
            'scheme': 'upto',
            'maxAmountRequired': 'lots',
            'extra': {'feePayer': str(Pubkey.new_unique())},
        }
        for field, value in cases.items():
            with self.subTest(field=field):
                result = self.gateway.verify(self.payload, {**self.requirements, field: value})
                self.assertFalse(result.is_valid)
        self.assertFalse(X402Authorization.objects.exists())

    def test_verify_rejects_garbage(self):
        result = self.gateway.verify({'payload': {'transaction': 'bm90IGEgdHg='}},
                                     self.requirements)
        self.assertEqual(result.invalid_reason, 'Failed to deserialize transaction')

    def test_verify_without_facilitator_key(self):
        gateway = FacilitatorGateway(self.chain, None, 'solana-devnet', settings.PAYFLIX_USDC_MINT)
        self.assertFalse(gateway.verify(self.payload, self.requirements).is_valid)

    def test_settle_cosigns_and_submits(self):
        self.gateway.verify(self.payload, self.requirements)

        result = self.gateway.settle(self.payload, self.requirements)

        self.assertTrue(result.success, result.error_reason)
        self.assertEqual(result.transaction, 'sig1')
        self.assertEqual(result.payer, str(self.payer.pubkey()))
        [sent] = self.chain.sent
        signed = VersionedTransaction.from_bytes(base64.b64decode(sent))
        self.assertTrue(signed.signatures[0].verify(
            self.facilitator.pubkey(), to_bytes_versioned(signed.message)))
        self.assertEqual(signed.signatures[1], VersionedTransaction.from_bytes(
            base64.b64decode(extract_transaction_b64(self.payload))).signatures[1])
        record = X402Authorization.objects.get()
        self.assertEqual(record.status, X402Authorization.Status.SETTLED)
        self.assertEqual(record.transaction_signature, 'sig1')

    def test_settle_requires_verification(self):
        result = self.gateway.settle(self.payload, self.requirements)
        self.assertFalse(result.success)
        self.assertEqual(result.error_reason, 'Authorization nonce not verified.')
        self.assertEqual(self.chain.sent, [])

    def test_settle_once(self):
        self.gateway.verify(self.payload, self.requirements)
        self.gateway.settle(self.payload, self.requirements)

        result = self.gateway.settle(self.payload, self.requirements)

        self.assertFalse(result.success)
        self.assertEqual(result.error_reason, 'Authorization nonce already settled.')
        self.assertEqual(result.transaction, 'sig1')
        self.assertEqual(len(self.chain.sent), 1)

    def test_settle_failure_keeps_authorization_open(self):
        self.gateway.verify(self.payload, self.requirements)
        self.chain.send_error = RpcUnavailable('Solana RPC unavailable')

        result = self.gateway.settle(self.payload, self.requirements)

        self.assertFalse(result.success)
        self.assertEqual(result.error_reason, 'Solana RPC unavailable')
        self.assertEqual(X402Authorization.objects.get().status,
                         X402Authorization.Status.VERIFIED)

    def test_settle_failed_on_chain(self):
        self.gateway.verify(self.payload, self.requirements)
        self.chain.confirm_results['sig1'] = ConfirmationResult(
            ok=False, signature='sig1', err='InsufficientFunds')

        result = self.gateway.settle(self.payload, self.requirements)

        self.assertFalse(result.success)
        self.assertEqual(result.transaction, 'sig1')
        self.assertIn('InsufficientFunds', result.error_reason)
