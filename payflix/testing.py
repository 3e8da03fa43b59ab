"""
In-memory chain client and fixtures for tests.
"""
import base64
import itertools
import json
from datetime import timedelta
from typing import Any, Callable, Dict, List, Optional, Sequence

import base58
from django.utils import timezone
from solders.keypair import Keypair

from payflix.chain import ChainClient, ConfirmationResult
from payflix.models import SpendingSession
from payflix.money import to_units


class FakeChainClient(ChainClient):
    """
    Token balances and submissions kept in dicts.

    Instructions are plain dicts. Failures are scripted by assigning an
    exception to ``send_error``, ``submit_error`` or ``confirm_error``, or a
    ``ConfirmationResult`` to ``confirm_results[signature]``. ``before_submit``
    runs at the start of each ``submit_and_confirm``.
    """

    def __init__(self, balances: Optional[Dict[str, int]] = None):
        super().__init__({'network': 'solana-devnet', 'explorer_url': 'https://solscan.io'})
        self.balances: Dict[str, int] = dict(balances or {})
        self.missing_accounts: set = set()
        self.submissions: List[Dict[str, Any]] = []
        self.sent: List[str] = []
        self.confirmed: List[str] = []
        self.confirm_results: Dict[str, ConfirmationResult] = {}
        self.send_error: Optional[Exception] = None
        self.submit_error: Optional[Exception] = None
        self.confirm_error: Optional[Exception] = None
        self.before_submit: Optional[Callable[[], None]] = None
        self._counter = itertools.count(1)

    @property
    def network(self) -> str:
        return self.config['network']

    def _signature(self) -> str:
        return f'sig{next(self._counter)}'

    def validate_address(self, address: str) -> bool:
        try:
            return len(base58.b58decode(address)) == 32
        except ValueError:
            return False

    def token_account_address(self, owner: str) -> str:
        return f'ata:{owner}'

    def get_token_balance(self, owner: str) -> int:
        return self.balances.get(owner, 0)

    def build_approval_instruction(self, owner: str, delegate: str, amount: int) -> Any:
        return {'type': 'approve', 'owner': owner, 'delegate': delegate, 'amount': amount}

    def build_transfer_instruction(self, source_owner: str, destination_owner: str,
                                   authority: str, amount: int) -> Any:
        return {'type': 'transfer', 'source': source_owner,
                'destination': destination_owner, 'authority': authority, 'amount': amount}

    def build_create_token_account_instruction(self, payer: str, owner: str) -> Optional[Any]:
        if owner not in self.missing_accounts:
            return None
        return {'type': 'create_account', 'payer': payer, 'owner': owner}

    def build_unsigned_transaction(self, instructions: Sequence[Any], fee_payer: str) -> str:
        body = {'feePayer': fee_payer, 'instructions': list(instructions)}
        return base64.b64encode(json.dumps(body).encode()).decode()

    def send_raw_transaction(self, transaction_b64: str) -> str:
        if self.send_error is not None:
            raise self.send_error
        signature = self._signature()
        self.sent.append(transaction_b64)
        return signature

    def submit_and_confirm(self, instructions: Sequence[Any], signers: Sequence[Any],
                           fee_payer: Any) -> str:
        if self.before_submit is not None:
            self.before_submit()
        if self.submit_error is not None:
            raise self.submit_error
        signer_keys = {str(s.pubkey()) for s in signers}
        for ix in instructions:
            if ix['type'] == 'transfer':
                assert ix['authority'] in signer_keys, 'transfer authority did not sign'
                self.balances[ix['source']] = self.balances.get(ix['source'], 0) - ix['amount']
                self.balances[ix['destination']] = (
                    self.balances.get(ix['destination'], 0) + ix['amount'])
            elif ix['type'] == 'create_account':
                self.missing_accounts.discard(ix['owner'])
        signature = self._signature()
        self.submissions.append({
            'signature': signature,
            'instructions': list(instructions),
            'fee_payer': str(fee_payer.pubkey()),
        })
        return signature

    def confirm(self, signature: str) -> ConfirmationResult:
        if self.confirm_error is not None:
            raise self.confirm_error
        self.confirmed.append(signature)
        return self.confirm_results.get(
            signature, ConfirmationResult(ok=True, signature=signature, slot=1))


def create_session(vault, user_wallet: str, approved, spent=0, expires_in=None,
                   status=None):
    """Insert a session row holding a freshly generated, vault-encrypted delegate."""
    delegate = Keypair()
    approved_units = to_units(approved)
    spent_units = to_units(spent)
    return SpendingSession.objects.create(
        user_wallet=user_wallet,
        delegate_public_key=str(delegate.pubkey()),
        delegate_key_encrypted=vault.encrypt(bytes(delegate)),
        approved_units=approved_units,
        spent_units=spent_units,
        remaining_units=approved_units - spent_units,
        approval_signature='approve-sig',
        status=status or SpendingSession.Status.ACTIVE,
        expires_at=timezone.now() + (expires_in if expires_in is not None else timedelta(hours=24)),
    )
