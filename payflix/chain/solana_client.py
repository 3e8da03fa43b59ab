"""
Solana implementation of the chain client.

SPL token delegation is the mechanism behind session payments:
1. The user signs an Approve instruction naming the session key as delegate
2. The facilitator later builds Transfer instructions signed by that delegate
3. The facilitator signs as fee payer and submits; the user never signs again
"""
import base64
import binascii
import json
import time
from typing import Any, Callable, Dict, List, Optional, Sequence, TypeVar

import base58
from loguru import logger
from solana.exceptions import SolanaRpcException
from solana.rpc.api import Client
from solana.rpc.commitment import Confirmed
from solana.rpc.core import RPCException
from solana.rpc.types import TxOpts
from solders.hash import Hash as Blockhash
from solders.keypair import Keypair
from solders.message import Message
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.transaction import Transaction
from solders.transaction_status import TransactionConfirmationStatus
from spl.token.constants import TOKEN_PROGRAM_ID
from spl.token.instructions import (
    ApproveParams,
    TransferParams,
    approve,
    create_associated_token_account,
    get_associated_token_address,
    transfer,
)

from payflix.errors import (
    BlockhashExpired,
    ChainSubmissionError,
    ConfirmationTimeout,
    ProgramError,
    RpcUnavailable,
    TransactionAlreadyProcessed,
    ValidationError,
)

from .base import ChainClient, ConfirmationResult

T = TypeVar('T')

# Tuple, not set: solders status enums are not hashable.
CONFIRMED_STATUSES = (
    TransactionConfirmationStatus.Confirmed,
    TransactionConfirmationStatus.Finalized,
)


def load_keypair(secret: str) -> Keypair:
    """Load a keypair from a JSON byte array or a base58 secret key."""
    secret = secret.strip()
    if secret.startswith('['):
        return Keypair.from_bytes(bytes(json.loads(secret)))
    return Keypair.from_bytes(base58.b58decode(secret))


def classify_rpc_error(exc: Exception) -> ChainSubmissionError:
    """
    Map an RPC failure to a specific submission error.

    The distinctions matter to the caller: an already-processed transaction,
    a stale blockhash and a program failure each need a different remedy.
    """
    msg = str(exc)
    if 'already been processed' in msg or 'AlreadyProcessed' in msg:
        return TransactionAlreadyProcessed(
            'This transaction was already processed.')
    if ('Blockhash not found' in msg or 'BlockhashNotFound' in msg
            or 'block height exceeded' in msg):
        return BlockhashExpired(
            'Transaction expired before it was submitted. Please sign again.')
    if isinstance(exc, SolanaRpcException):
        return RpcUnavailable(f'Solana RPC unavailable: {exc}')
    return ProgramError(f'Transaction rejected: {msg}')


class SolanaChainClient(ChainClient):
    """
    SPL token operations for a single mint over a synchronous RPC client.

    Config keys: rpc_url, usdc_mint, network, confirm_timeout_seconds,
    confirm_poll_seconds, rpc_max_retries.
    """

    def __init__(self, config: Dict[str, Any], client: Optional[Client] = None):
        super().__init__(config)
        self._client = client or Client(
            config.get('rpc_url', 'https://api.devnet.solana.com'),
            commitment=Confirmed,
        )
        self._mint = Pubkey.from_string(config['usdc_mint'])
        self._confirm_timeout = float(config.get('confirm_timeout_seconds', 60))
        self._poll_seconds = float(config.get('confirm_poll_seconds', 1.0))
        self._max_retries = int(config.get('rpc_max_retries', 3))

    @property
    def network(self) -> str:
        return self.config.get('network', 'solana-devnet')

    def validate_address(self, address: str) -> bool:
        """Validate Solana address format (base58)."""
        try:
            decoded = base58.b58decode(address)
            return len(decoded) == 32
        except Exception:
            return False

    def _pubkey(self, address: str) -> Pubkey:
        try:
            return Pubkey.from_string(address)
        except (ValueError, TypeError) as exc:
            raise ValidationError(f'Invalid Solana address: {address}') from exc

    def _ata(self, owner: str) -> Pubkey:
        return get_associated_token_address(self._pubkey(owner), self._mint)

    def _with_retries(self, description: str, call: Callable[[], T]) -> T:
        """Run an idempotent read, retrying transport failures a bounded number of times."""
        attempt = 0
        while True:
            try:
                return call()
            except SolanaRpcException as exc:
                attempt += 1
                if attempt > self._max_retries:
                    logger.error('{} failed after {} attempts: {}',
                                 description, attempt, exc)
                    raise RpcUnavailable(
                        f'Solana RPC unavailable during {description}.') from exc
                logger.warning('{} failed (attempt {}), retrying: {}',
                               description, attempt, exc)
                time.sleep(self._poll_seconds * attempt)

    def token_account_address(self, owner: str) -> str:
        return str(self._ata(owner))

    def get_token_balance(self, owner: str) -> int:
        ata = self._ata(owner)
        account = self._with_retries(
            'token account lookup', lambda: self._client.get_account_info(ata))
        if account.value is None:
            return 0
        balance = self._with_retries(
            'token balance read', lambda: self._client.get_token_account_balance(ata))
        return int(balance.value.amount)

    def build_approval_instruction(self, owner: str, delegate: str, amount: int) -> Any:
        owner_key = self._pubkey(owner)
        return approve(ApproveParams(
            program_id=TOKEN_PROGRAM_ID,
            source=get_associated_token_address(owner_key, self._mint),
            delegate=self._pubkey(delegate),
            owner=owner_key,
            amount=int(amount),
        ))

    def build_transfer_instruction(
        self,
        source_owner: str,
        destination_owner: str,
        authority: str,
        amount: int,
    ) -> Any:
        return transfer(TransferParams(
            program_id=TOKEN_PROGRAM_ID,
            source=self._ata(source_owner),
            dest=self._ata(destination_owner),
            owner=self._pubkey(authority),
            amount=int(amount),
        ))

    def build_create_token_account_instruction(self, payer: str, owner: str) -> Optional[Any]:
        ata = self._ata(owner)
        account = self._with_retries(
            'token account lookup', lambda: self._client.get_account_info(ata))
        if account.value is not None:
            return None
        logger.info('Token account {} missing for {}, creating it', ata, owner)
        return create_associated_token_account(
            payer=self._pubkey(payer),
            owner=self._pubkey(owner),
            mint=self._mint,
        )

    def _latest_blockhash(self) -> Blockhash:
        resp = self._with_retries(
            'blockhash fetch',
            lambda: self._client.get_latest_blockhash(commitment=Confirmed),
        )
        return resp.value.blockhash

    def build_unsigned_transaction(self, instructions: Sequence[Any], fee_payer: str) -> str:
        message = Message.new_with_blockhash(
            list(instructions), self._pubkey(fee_payer), self._latest_blockhash())
        tx = Transaction.new_unsigned(message)
        return base64.b64encode(bytes(tx)).decode()

    def _send(self, raw: bytes, skip_preflight: bool = False) -> str:
        opts = TxOpts(
            skip_preflight=skip_preflight,
            skip_confirmation=True,
            preflight_commitment=Confirmed,
            max_retries=self._max_retries,
        )
        resp = self._client.send_raw_transaction(raw, opts=opts)
        return str(resp.value)

    def send_raw_transaction(self, transaction_b64: str) -> str:
        try:
            raw = base64.b64decode(transaction_b64, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise ValidationError('Signed transaction must be base64 encoded.') from exc

        try:
            signature = self._send(raw)
        except (RPCException, SolanaRpcException) as exc:
            error = classify_rpc_error(exc)
            logger.error('Broadcast of signed transaction failed: {}', exc)
            raise error from exc
        logger.info('Signed transaction broadcast: {}', signature)
        return signature

    def submit_and_confirm(
        self,
        instructions: Sequence[Any],
        signers: Sequence[Keypair],
        fee_payer: Keypair,
    ) -> str:
        keypairs: List[Keypair] = [fee_payer]
        for signer in signers:
            if signer.pubkey() not in {k.pubkey() for k in keypairs}:
                keypairs.append(signer)

        message = Message(list(instructions), fee_payer.pubkey())
        tx = Transaction(keypairs, message, self._latest_blockhash())
        raw = bytes(tx)
        signature = str(tx.signatures[0])

        try:
            try:
                self._send(raw)
            except RPCException as exc:
                # RPC nodes can lag on a brand-new blockhash at preflight; the
                # identical bytes carry the same signature so resending is safe.
                msg = str(exc)
                if 'Blockhash not found' not in msg and 'BlockhashNotFound' not in msg:
                    raise
                logger.warning('Preflight rejected fresh blockhash, resending without preflight')
                self._send(raw, skip_preflight=True)
        except SolanaRpcException as exc:
            # The send may have landed; only re-check the known signature.
            logger.warning('Send of {} hit a transport error, checking status: {}',
                           signature, exc)
        except RPCException as exc:
            logger.error('Submission of {} rejected: {}', signature, exc)
            raise classify_rpc_error(exc) from exc

        logger.info('Transaction submitted: {}', signature)
        result = self.confirm(signature)
        if not result.ok:
            logger.error('Transaction {} failed on-chain: {}', signature, result.err)
            raise ProgramError(
                f'Transaction failed on-chain: {result.err}', signature=signature)
        return signature

    def confirm(self, signature: str) -> ConfirmationResult:
        try:
            sig = Signature.from_string(signature)
        except ValueError as exc:
            raise ValidationError(f'Invalid transaction signature: {signature}') from exc

        deadline = time.monotonic() + self._confirm_timeout
        transient_failures = 0
        while True:
            try:
                resp = self._client.get_signature_statuses([sig])
            except SolanaRpcException as exc:
                transient_failures += 1
                if transient_failures > self._max_retries:
                    raise RpcUnavailable(
                        f'Unable to check status of {signature}.',
                        signature=signature,
                    ) from exc
                logger.warning('Status check for {} failed: {}', signature, exc)
            else:
                status = resp.value[0] if resp.value else None
                if status is not None:
                    if status.err is not None:
                        return ConfirmationResult(
                            ok=False, signature=signature,
                            err=str(status.err), slot=status.slot)
                    if status.confirmation_status in CONFIRMED_STATUSES:
                        return ConfirmationResult(
                            ok=True, signature=signature, slot=status.slot)

            if time.monotonic() >= deadline:
                raise ConfirmationTimeout(
                    'Transaction not confirmed in time. It may still land; '
                    'check again before retrying.',
                    signature=signature,
                )
            time.sleep(self._poll_seconds)
