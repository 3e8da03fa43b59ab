import base64
import unittest
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

from solana.exceptions import SolanaRpcException
from solana.rpc.core import RPCException
from solana.rpc.providers.http import HTTPProvider
from solders.hash import Hash
from solders.keypair import Keypair
from solders.pubkey import Pubkey
from solders.rpc.requests import GetLatestBlockhash
from solders.signature import Signature
from solders.transaction_status import TransactionConfirmationStatus

from payflix.chain.solana_client import SolanaChainClient, classify_rpc_error, load_keypair
from payflix.errors import (
    BlockhashExpired,
    ConfirmationTimeout,
    ProgramError,
    RpcUnavailable,
    TransactionAlreadyProcessed,
    ValidationError,
)


def transport_error() -> SolanaRpcException:
    # Same positional arguments the provider's exception handler passes: the
    # provider itself, then the request body.
    return SolanaRpcException(ConnectionError('connection refused'),
                              HTTPProvider.make_request, MagicMock(), GetLatestBlockhash())


def status(err=None, confirmation=TransactionConfirmationStatus.Confirmed, slot=7):
    return SimpleNamespace(err=err, confirmation_status=confirmation, slot=slot)


class ClassifyRpcErrorTests(unittest.TestCase):
    def test_already_processed(self):
        error = classify_rpc_error(RPCException('This transaction has already been processed'))
        self.assertIsInstance(error, TransactionAlreadyProcessed)

    def test_blockhash(self):
        for msg in ('Blockhash not found', 'block height exceeded'):
            with self.subTest(msg=msg):
                self.assertIsInstance(classify_rpc_error(RPCException(msg)), BlockhashExpired)

    def test_transport(self):
        error = classify_rpc_error(transport_error())
        self.assertIsInstance(error, RpcUnavailable)
        self.assertTrue(error.retryable)

    def test_program_error(self):
        error = classify_rpc_error(RPCException('custom program error: 0x1'))
        self.assertIsInstance(error, ProgramError)
        self.assertFalse(error.retryable)


class LoadKeypairTests(unittest.TestCase):
    def test_json_and_base58_forms(self):
        keypair = Keypair()
        as_json = str(list(bytes(keypair)))
        self.assertEqual(load_keypair(as_json).pubkey(), keypair.pubkey())
        self.assertEqual(load_keypair(f' {keypair} ').pubkey(), keypair.pubkey())


@patch('payflix.chain.solana_client.time.sleep')
class SolanaChainClientTests(unittest.TestCase):
    def setUp(self) -> None:
        self.rpc = MagicMock()
        self.rpc.get_latest_blockhash.return_value = SimpleNamespace(
            value=SimpleNamespace(blockhash=Hash.default()))
        self.rpc.send_raw_transaction.return_value = SimpleNamespace(value='ignored')
        self.rpc.get_signature_statuses.return_value = SimpleNamespace(value=[status()])
        self.client = self._client()
        self.owner = str(Keypair().pubkey())
        self.creator = str(Keypair().pubkey())
        self.delegate = Keypair()
        self.facilitator = Keypair()

    def _client(self, **overrides) -> SolanaChainClient:
        config = {
            'usdc_mint': str(Pubkey.new_unique()),
            'network': 'solana-devnet',
            'confirm_timeout_seconds': 5,
            'confirm_poll_seconds': 0,
            'rpc_max_retries': 2,
        }
        config.update(overrides)
        return SolanaChainClient(config, client=self.rpc)

    def _transfer(self):
        return [self.client.build_transfer_instruction(
            self.owner, self.creator, str(self.delegate.pubkey()), 970_000)]

    def test_validate_address(self, _sleep):
        self.assertTrue(self.client.validate_address(self.owner))
        self.assertFalse(self.client.validate_address('not-base58-0OIl'))
        self.assertFalse(self.client.validate_address('abc'))

    def test_balance_of_missing_account_is_zero(self, _sleep):
        self.rpc.get_account_info.return_value = SimpleNamespace(value=None)
        self.assertEqual(self.client.get_token_balance(self.owner), 0)
        self.rpc.get_token_account_balance.assert_not_called()

    def test_balance_retries_transport_errors(self, sleep):
        self.rpc.get_account_info.side_effect = [
            transport_error(), SimpleNamespace(value=object())]
        self.rpc.get_token_account_balance.return_value = SimpleNamespace(
            value=SimpleNamespace(amount='2500000'))

        self.assertEqual(self.client.get_token_balance(self.owner), 2_500_000)
        self.assertEqual(sleep.call_count, 1)

    def test_balance_gives_up_after_retries(self, _sleep):
        self.rpc.get_account_info.side_effect = transport_error()
        with self.assertRaises(RpcUnavailable):
            self.client.get_token_balance(self.owner)
        self.assertEqual(self.rpc.get_account_info.call_count, 3)

    def test_create_account_only_when_missing(self, _sleep):
        self.rpc.get_account_info.return_value = SimpleNamespace(value=object())
        self.assertIsNone(self.client.build_create_token_account_instruction(
            str(self.facilitator.pubkey()), self.creator))

        self.rpc.get_account_info.return_value = SimpleNamespace(value=None)
        self.assertIsNotNone(self.client.build_create_token_account_instruction(
            str(self.facilitator.pubkey()), self.creator))

    def test_unsigned_transaction_is_base64(self, _sleep):
        ix = self.client.build_approval_instruction(self.owner, str(self.delegate.pubkey()), 5)
        encoded = self.client.build_unsigned_transaction([ix], self.owner)
        self.assertTrue(base64.b64decode(encoded))

    def test_invalid_address_is_validation_error(self, _sleep):
        with self.assertRaises(ValidationError):
            self.client.build_approval_instruction('bogus', str(self.delegate.pubkey()), 5)

    def test_send_raw_rejects_non_base64(self, _sleep):
        with self.assertRaises(ValidationError):
            self.client.send_raw_transaction('***')

    def test_send_raw_classifies_rejection(self, _sleep):
        self.rpc.send_raw_transaction.side_effect = RPCException('Blockhash not found')
        with self.assertRaises(BlockhashExpired):
            self.client.send_raw_transaction(base64.b64encode(b'tx').decode())

    def test_confirm_ok(self, _sleep):
        sig = str(Signature.default())
        result = self.client.confirm(sig)
        self.assertTrue(result.ok)
        self.assertEqual(result.slot, 7)

    def test_confirm_accepts_finalized(self, _sleep):
        self.rpc.get_signature_statuses.return_value = SimpleNamespace(
            value=[status(confirmation=TransactionConfirmationStatus.Finalized, slot=11)])
        result = self.client.confirm(str(Signature.default()))
        self.assertTrue(result.ok)
        self.assertEqual(result.slot, 11)

    def test_confirm_reports_failed_transaction(self, _sleep):
        self.rpc.get_signature_statuses.return_value = SimpleNamespace(
            value=[status(err='InstructionError')])
        result = self.client.confirm(str(Signature.default()))
        self.assertFalse(result.ok)
        self.assertEqual(result.err, 'InstructionError')

    def test_confirm_times_out(self, _sleep):
        client = self._client(confirm_timeout_seconds=0)
        self.rpc.get_signature_statuses.return_value = SimpleNamespace(value=[None])
        with self.assertRaises(ConfirmationTimeout) as ctx:
            client.confirm(str(Signature.default()))
        self.assertTrue(ctx.exception.retryable)

    def test_confirm_waits_for_confirmed_commitment(self, _sleep):
        self.rpc.get_signature_statuses.side_effect = [
            SimpleNamespace(value=[status(confirmation=TransactionConfirmationStatus.Processed)]),
            SimpleNamespace(value=[status(slot=9)]),
        ]
        self.assertEqual(self.client.confirm(str(Signature.default())).slot, 9)

    def test_confirm_gives_up_on_unreachable_rpc(self, _sleep):
        self.rpc.get_signature_statuses.side_effect = transport_error()
        with self.assertRaises(RpcUnavailable):
            self.client.confirm(str(Signature.default()))

    def test_confirm_rejects_malformed_signature(self, _sleep):
        with self.assertRaises(ValidationError):
            self.client.confirm('not-a-signature')

    def test_submit_and_confirm(self, _sleep):
        signature = self.client.submit_and_confirm(
            self._transfer(), [self.delegate], self.facilitator)

        self.rpc.send_raw_transaction.assert_called_once()
        opts = self.rpc.send_raw_transaction.call_args.kwargs['opts']
        self.assertFalse(opts.skip_preflight)
        checked = self.rpc.get_signature_statuses.call_args.args[0]
        self.assertEqual(str(checked[0]), signature)

    def test_submit_resends_same_bytes_without_preflight(self, _sleep):
        self.rpc.send_raw_transaction.side_effect = [
            RPCException('Blockhash not found'), SimpleNamespace(value='ignored')]

        self.client.submit_and_confirm(self._transfer(), [self.delegate], self.facilitator)

        first, second = self.rpc.send_raw_transaction.call_args_list
        self.assertEqual(first.args[0], second.args[0])
        self.assertTrue(second.kwargs['opts'].skip_preflight)

    def test_submit_transport_error_checks_signature_only(self, _sleep):
        self.rpc.send_raw_transaction.side_effect = transport_error()

        signature = self.client.submit_and_confirm(
            self._transfer(), [self.delegate], self.facilitator)

        self.assertEqual(self.rpc.send_raw_transaction.call_count, 1)
        self.assertEqual(str(self.rpc.get_signature_statuses.call_args.args[0][0]), signature)

    def test_submit_program_rejection(self, _sleep):
        self.rpc.send_raw_transaction.side_effect = RPCException('custom program error: 0x1')
        with self.assertRaises(ProgramError):
            self.client.submit_and_confirm(self._transfer(), [self.delegate], self.facilitator)
        self.rpc.get_signature_statuses.assert_not_called()

    def test_submit_failed_on_chain(self, _sleep):
        self.rpc.get_signature_statuses.return_value = SimpleNamespace(
            value=[status(err='InsufficientFunds')])
        with self.assertRaises(ProgramError) as ctx:
            self.client.submit_and_confirm(self._transfer(), [self.delegate], self.facilitator)
        self.assertIn('signature', ctx.exception.details)
