"""
x402 facilitator for the ``exact`` scheme on Solana.

Third parties send a partially signed SPL ``TransferChecked`` transaction whose
fee payer is this facilitator:
1. ``verify`` checks the instruction layout against the payment requirements
   and records the authorization; the same transaction bytes are accepted once
2. ``settle`` adds the facilitator's fee-payer signature and submits it
"""
import base64
import hashlib
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from django.db import IntegrityError as DatabaseIntegrityError
from django.db import transaction
from loguru import logger
from solders.keypair import Keypair
from solders.message import to_bytes_versioned
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.transaction import VersionedTransaction
from spl.token.constants import ASSOCIATED_TOKEN_PROGRAM_ID, TOKEN_PROGRAM_ID
from spl.token.instructions import get_associated_token_address

from payflix.chain import ChainClient
from payflix.errors import ChainSubmissionError, ValidationError
from payflix.models import X402Authorization

COMPUTE_BUDGET_PROGRAM_ID = Pubkey.from_string('ComputeBudget111111111111111111111111111111')
TOKEN_2022_PROGRAM_ID = Pubkey.from_string('TokenzQdBNbLqP5VEhdkAS6EPFLC1PHnBqCXEpPxuEb')
MEMO_PROGRAM_IDS = {
    'MemoSq4gqABAXKb96qnH8TysNcWxMyWCqXgDLGmfcHr',
    'Memo1UhkJRfHyvLMcVucJwxXeuD728EqVDDwQDxFMNo',
}

# Compute unit price cap, in lamports.
MAX_COMPUTE_UNIT_PRICE = 5

SET_COMPUTE_UNIT_PRICE = 3
TRANSFER_CHECKED = 12


@dataclass
class VerificationResult:
    is_valid: bool
    payer: Optional[str] = None
    invalid_reason: Optional[str] = None
    details: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'isValid': self.is_valid,
            'invalidReason': self.invalid_reason,
            'payer': self.payer,
        }


@dataclass
class SettlementResult:
    success: bool
    transaction: Optional[str] = None
    network: Optional[str] = None
    payer: Optional[str] = None
    error_reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {
            'success': self.success,
            'errorReason': self.error_reason,
            'transaction': self.transaction,
        }
        if self.success:
            data['network'] = self.network
            data['payer'] = self.payer
        return data


def extract_transaction_b64(payload: Dict[str, Any]) -> Optional[str]:
    """
    Pull the base64 transaction out of a payment payload.

    Accepts ``payload.serializedTransaction``, ``payload.transaction`` or a
    bare string ``payload``.
    """
    raw = payload.get('payload')
    if isinstance(raw, dict):
        return (
            raw.get('serializedTransaction')
            or raw.get('serialized_transaction')
            or raw.get('transaction')
        )
    if isinstance(raw, str):
        return raw
    return None


def transaction_nonce(transaction_b64: str) -> str:
    """Stable replay key derived from the submitted bytes."""
    digest = hashlib.sha256(base64.b64decode(transaction_b64)).hexdigest()[:32]
    return f'solana:{digest}'


def compute_unit_price(data: bytes) -> Optional[int]:
    # [discriminator u8, micro_lamports u64 LE]
    if len(data) >= 9 and data[0] == SET_COMPUTE_UNIT_PRICE:
        return int.from_bytes(data[1:9], 'little') // 1_000_000
    return None


class FacilitatorGateway:
    """
    Verify and settle third-party x402 payments, paying fees as facilitator.

    The gateway only accepts the configured network and mint.
    """

    def __init__(
        self,
        chain: ChainClient,
        facilitator: Optional[Keypair],
        network: str,
        usdc_mint: str,
    ):
        self.chain = chain
        self.facilitator = facilitator
        self.network = network
        self.usdc_mint = usdc_mint

    def supported(self) -> List[Dict[str, Any]]:
        return [{'x402Version': 1, 'scheme': 'exact', 'network': self.network}]

    # -- verification -------------------------------------------------------

    def _check_requirements(self, requirements: Dict[str, Any]) -> Optional[str]:
        if not isinstance(requirements, dict):
            return 'Invalid payment requirements'
        missing = [f for f in ('payTo', 'asset', 'maxAmountRequired') if not requirements.get(f)]
        if missing:
            return f"Missing payment requirements: {', '.join(missing)}"
        if requirements.get('scheme', 'exact') != 'exact':
            return f"Unsupported scheme: {requirements.get('scheme')}"
        if requirements.get('network', self.network) != self.network:
            return f"Unsupported network: {requirements.get('network')}"
        if requirements['asset'] != self.usdc_mint:
            return f"Unsupported asset: {requirements['asset']}"
        if not self.chain.validate_address(requirements['payTo']):
            return 'Invalid payTo address'
        try:
            amount = int(requirements['maxAmountRequired'])
        except (TypeError, ValueError):
            return 'Invalid maxAmountRequired'
        if amount <= 0:
            return 'maxAmountRequired must be positive'
        fee_payer_hint = (requirements.get('extra') or {}).get('feePayer')
        if fee_payer_hint and fee_payer_hint != str(self.facilitator.pubkey()):
            return 'Fee payer in requirements does not match facilitator configuration'
        return None

    def _check_transfer(self, message, instruction,
                        requirements: Dict[str, Any]) -> Tuple[Optional[str], Optional[Dict[str, Any]]]:
        data = bytes(instruction.data)
        # [discriminator u8, amount u64 LE, decimals u8]
        if len(data) < 10 or data[0] != TRANSFER_CHECKED:
            return 'Token instruction must be TransferChecked', None
        amount = int.from_bytes(data[1:9], 'little')
        if amount != int(requirements['maxAmountRequired']):
            return f"Amount mismatch: {amount} != {requirements['maxAmountRequired']}", None

        # TransferChecked accounts: source, mint, destination, authority
        if len(instruction.accounts) < 4:
            return 'TransferChecked requires at least 4 accounts', None
        keys = message.account_keys
        source, mint, dest, authority = (keys[i] for i in list(instruction.accounts)[:4])
        if str(mint) != requirements['asset']:
            return f'Mint mismatch: {mint}', None
        expected_dest = get_associated_token_address(
            Pubkey.from_string(requirements['payTo']), mint)
        if dest != expected_dest:
            return f'Destination mismatch: {dest} != {expected_dest}', None
        return None, {
            'amount': amount,
            'mint': str(mint),
            'source': str(source),
            'destination': str(dest),
            'authority': str(authority),
        }

    def check_instructions(
        self,
        tx: VersionedTransaction,
        requirements: Dict[str, Any],
    ) -> Tuple[Optional[str], Optional[Dict[str, Any]]]:
        """
        Validate the instruction layout of an exact-scheme payment.

        Layout: two ComputeBudget instructions, then exactly one
        TransferChecked with optional ATA create (before the transfer) and
        memo instructions. The facilitator signs as fee payer only and must
        not appear in any instruction.

        Returns:
            (error, transfer_details); error is None when the layout is valid
        """
        message = tx.message
        keys = message.account_keys
        instructions = list(message.instructions)
        facilitator_key = self.facilitator.pubkey()

        if keys[0] != facilitator_key:
            return f'Fee payer mismatch: expected {facilitator_key}, got {keys[0]}', None
        for instruction in instructions:
            if any(keys[i] == facilitator_key for i in instruction.accounts):
                return 'Fee payer must not appear in instruction accounts', None

        if not 3 <= len(instructions) <= 6:
            return f'Expected 3 to 6 instructions, got {len(instructions)}', None
        for position, instruction in enumerate(instructions[:2]):
            if keys[instruction.program_id_index] != COMPUTE_BUDGET_PROGRAM_ID:
                return f'Instruction {position} must be a ComputeBudget instruction', None
            price = compute_unit_price(bytes(instruction.data))
            if price and price > MAX_COMPUTE_UNIT_PRICE:
                return (f'Compute unit price {price} exceeds maximum '
                        f'{MAX_COMPUTE_UNIT_PRICE}'), None

        details = None
        for index, instruction in enumerate(instructions[2:], start=2):
            program_id = keys[instruction.program_id_index]
            if str(program_id) in MEMO_PROGRAM_IDS:
                continue
            if program_id == ASSOCIATED_TOKEN_PROGRAM_ID:
                if details is not None:
                    return 'ATA create instruction must appear before TransferChecked', None
                continue
            if program_id in (TOKEN_PROGRAM_ID, TOKEN_2022_PROGRAM_ID):
                if details is not None:
                    return 'Multiple TransferChecked instructions are not allowed', None
                error, details = self._check_transfer(message, instruction, requirements)
                if error:
                    return error, None
                continue
            return f'Unexpected instruction at index {index}: program_id={program_id}', None

        if details is None:
            return 'Missing TransferChecked instruction', None
        return None, details

    @staticmethod
    def _deserialize(transaction_b64: str) -> Optional[VersionedTransaction]:
        try:
            return VersionedTransaction.from_bytes(base64.b64decode(transaction_b64))
        except Exception as exc:
            logger.info('Failed to deserialize x402 transaction: {}', exc)
            return None

    def verify(self, payload: Dict[str, Any], requirements: Dict[str, Any]) -> VerificationResult:
        if self.facilitator is None:
            return VerificationResult(
                is_valid=False, invalid_reason='Facilitator address not configured')

        reason = self._check_requirements(requirements)
        if reason:
            return VerificationResult(is_valid=False, invalid_reason=reason)

        transaction_b64 = extract_transaction_b64(payload)
        if not transaction_b64:
            return VerificationResult(is_valid=False, invalid_reason='Missing transaction payload')
        tx = self._deserialize(transaction_b64)
        if tx is None:
            return VerificationResult(
                is_valid=False, invalid_reason='Failed to deserialize transaction')

        reason, details = self.check_instructions(tx, requirements)
        if reason:
            return VerificationResult(is_valid=False, invalid_reason=reason)

        nonce = transaction_nonce(transaction_b64)
        payer = details['authority']
        try:
            with transaction.atomic():
                X402Authorization.objects.create(
                    nonce=nonce,
                    payer=payer,
                    pay_to=requirements['payTo'],
                    amount_units=details['amount'],
                    network=self.network,
                    payment_requirements=requirements,
                )
        except DatabaseIntegrityError:
            logger.info('x402 authorization replay detected for nonce {}', nonce)
            return VerificationResult(
                is_valid=False, invalid_reason='Authorization nonce already processed.')

        logger.info('x402 payment verified: payer={} amount={} nonce={}',
                    payer, details['amount'], nonce)
        return VerificationResult(is_valid=True, payer=payer,
                                  details={**details, 'nonce': nonce})

    # -- settlement ---------------------------------------------------------

    def _cosign(self, tx: VersionedTransaction) -> VersionedTransaction:
        required = int(tx.message.header.num_required_signatures)
        if required <= 0:
            raise ValidationError('Invalid signature header')
        signatures = list(tx.signatures)[:required]
        signatures.extend([Signature.default()] * (required - len(signatures)))
        signatures[0] = self.facilitator.sign_message(to_bytes_versioned(tx.message))
        return VersionedTransaction.populate(tx.message, signatures)

    def settle(self, payload: Dict[str, Any], requirements: Dict[str, Any]) -> SettlementResult:
        if self.facilitator is None:
            return SettlementResult(
                success=False, error_reason='Solana signer private key not configured')

        transaction_b64 = extract_transaction_b64(payload)
        tx = self._deserialize(transaction_b64) if transaction_b64 else None
        if tx is None:
            return SettlementResult(success=False, error_reason='Missing transaction payload')
        nonce = transaction_nonce(transaction_b64)

        with transaction.atomic():
            record = X402Authorization.objects.select_for_update().filter(nonce=nonce).first()
            if record is None:
                logger.info('x402 settlement attempted without prior verification for nonce {}',
                            nonce)
                return SettlementResult(
                    success=False, error_reason='Authorization nonce not verified.')
            if record.status == X402Authorization.Status.SETTLED:
                return SettlementResult(
                    success=False, error_reason='Authorization nonce already settled.',
                    transaction=record.transaction_signature)

            try:
                signed = self._cosign(tx)
                signature = self.chain.send_raw_transaction(
                    base64.b64encode(bytes(signed)).decode())
                result = self.chain.confirm(signature)
            except (ChainSubmissionError, ValidationError) as exc:
                logger.error('x402 settlement for nonce {} failed: {}', nonce, exc.message)
                return SettlementResult(success=False, error_reason=exc.message)
            if not result.ok:
                logger.error('x402 settlement {} failed on-chain: {}', signature, result.err)
                return SettlementResult(
                    success=False, transaction=signature,
                    error_reason=f'Transaction failed on-chain: {result.err}')

            record.mark_settled(signature)
            record.save(update_fields=[
                'status', 'transaction_signature', 'settled_at', 'updated_at'])

        logger.info('x402 settlement succeeded for nonce {} tx {}', nonce, signature)
        return SettlementResult(
            success=True,
            transaction=signature,
            network=self.network,
            payer=record.payer,
        )
