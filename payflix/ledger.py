"""
Session ledger: the lifecycle of delegated spending sessions.

A session is an on-chain SPL approval naming an ephemeral delegate key, mirrored
by a ``SpendingSession`` row. Deposits and top-ups go through a two-step
handshake: ``prepare_session`` returns an unsigned approval for the user's
wallet, ``confirm_session`` waits for it on-chain and writes the row.
"""
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, Optional

from django.db import IntegrityError as DatabaseIntegrityError
from django.db import transaction
from django.utils import timezone
from loguru import logger
from solders.keypair import Keypair

from payflix.chain import ChainClient
from payflix.errors import (
    ApprovalExceedsBalance,
    ChainSubmissionError,
    InsufficientBalance,
    InsufficientSessionBalance,
    IntegrityError,
    InvalidWithdrawAmount,
    LedgerDriftError,
    NoActiveSession,
    ProgramError,
    SessionExpired,
    SessionNotFound,
    ValidationError,
)
from payflix.models import SpendingSession
from payflix.money import (
    Amount,
    from_units,
    round_cents,
    to_decimal,
    to_units,
)
from payflix.pending import CachePendingSessionStore, PendingSession
from payflix.stores import DjangoUserDirectory, SessionStore
from payflix.vault import KeyVault


@dataclass
class PreparedSession:
    session_id: str
    transaction: str
    delegate_public_key: str
    deposit_amount: Decimal
    total_approval: Decimal
    is_top_up: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            'sessionId': self.session_id,
            'transaction': self.transaction,
            'sessionPublicKey': self.delegate_public_key,
            'depositAmount': str(self.deposit_amount),
            'totalApproval': str(self.total_approval),
            'isTopUp': self.is_top_up,
        }


@dataclass
class SessionSnapshot:
    """Read-only view of a session row."""
    id: str
    user_wallet: str
    delegate_public_key: str
    approved_amount: Decimal
    spent_amount: Decimal
    remaining_amount: Decimal
    approval_signature: str
    status: str
    expires_at: datetime
    created_at: Optional[datetime] = None

    @classmethod
    def from_model(cls, session: SpendingSession) -> 'SessionSnapshot':
        return cls(
            id=str(session.id),
            user_wallet=session.user_wallet,
            delegate_public_key=session.delegate_public_key,
            approved_amount=session.approved_amount,
            spent_amount=session.spent_amount,
            remaining_amount=session.remaining_amount,
            approval_signature=session.approval_signature,
            status=session.status,
            expires_at=session.expires_at,
            created_at=session.created_at,
        )

    @property
    def is_expired(self) -> bool:
        return self.expires_at <= timezone.now()

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'userWallet': self.user_wallet,
            'sessionPublicKey': self.delegate_public_key,
            'approvedAmount': str(self.approved_amount),
            'spentAmount': str(self.spent_amount),
            'remainingAmount': str(self.remaining_amount),
            'approvalSignature': self.approval_signature,
            'status': self.status,
            'expiresAt': self.expires_at.isoformat(),
            'isExpired': self.is_expired,
        }


@dataclass
class SpendAuthorization:
    """Everything needed to execute one spend. Holds a live secret key."""
    session_id: str
    user_wallet: str
    delegate: Keypair
    amount_units: int
    remaining_units: int

    def __repr__(self) -> str:
        return (f'SpendAuthorization(session_id={self.session_id!r}, '
                f'amount_units={self.amount_units})')


@dataclass
class WithdrawResult:
    session_id: str
    withdrawn_amount: Decimal
    session_closed: bool
    new_remaining_balance: Optional[Decimal] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {
            'sessionId': self.session_id,
            'withdrawnAmount': str(self.withdrawn_amount),
            'sessionClosed': self.session_closed,
        }
        if self.new_remaining_balance is not None:
            data['newRemainingBalance'] = str(self.new_remaining_balance)
        return data


class SessionLedger:
    """
    Sole writer of session state.

    Collaborators are injected: the session store, the pending store, the key
    vault and the chain client. No lock is held across chain or store calls;
    balance changes rely on the store's conditional updates.
    """

    def __init__(
        self,
        store: SessionStore,
        pending: CachePendingSessionStore,
        vault: KeyVault,
        chain: ChainClient,
        session_ttl_hours: int = 24,
        drift_tolerance: Amount = Decimal('0.01'),
        users: Optional[DjangoUserDirectory] = None,
    ):
        self.store = store
        self.pending = pending
        self.vault = vault
        self.chain = chain
        self.session_ttl_hours = session_ttl_hours
        self.drift_tolerance = to_decimal(drift_tolerance)
        self.users = users

    def _require_wallet(self, user_wallet: str) -> str:
        if not user_wallet or not self.chain.validate_address(user_wallet):
            raise ValidationError('A valid userWallet is required.')
        return user_wallet

    def _load_delegate(self, session: SpendingSession) -> Keypair:
        keypair = Keypair.from_bytes(self.vault.decrypt(session.delegate_key_encrypted))
        if str(keypair.pubkey()) != session.delegate_public_key:
            raise IntegrityError(
                'Decrypted session key does not match its public key.',
                session_id=str(session.id),
            )
        return keypair

    # -- deposit / top-up ---------------------------------------------------

    def prepare_session(
        self,
        user_wallet: str,
        deposit_amount: Amount,
        expires_in_hours: Optional[int] = None,
    ) -> PreparedSession:
        """
        Build the approval a user signs to open or top up a session.

        Args:
            user_wallet: Owner of the token account being delegated
            deposit_amount: New USDC to make spendable
            expires_in_hours: Session lifetime; defaults to the configured TTL

        Returns:
            PreparedSession with the unsigned base64 transaction

        Raises:
            ValidationError: bad wallet or non-positive amount
            InsufficientBalance: deposit exceeds the wallet balance
            ApprovalExceedsBalance: remaining + deposit exceeds the wallet balance
        """
        self._require_wallet(user_wallet)
        deposit = to_decimal(deposit_amount)
        deposit_units = to_units(deposit)
        if deposit <= 0 or deposit_units <= 0:
            raise ValidationError('Deposit amount must be greater than 0.')
        hours = expires_in_hours or self.session_ttl_hours
        if hours <= 0:
            raise ValidationError('expiresInHours must be positive.')

        if self.users is not None:
            self.users.resolve(user_wallet)

        existing = self.store.get_active_by_wallet(user_wallet)
        if existing is not None:
            # The on-chain delegate must stay stable while the session lives.
            delegate = self._load_delegate(existing)
            encrypted = existing.delegate_key_encrypted
            total_units = existing.remaining_units + deposit_units
            logger.info('Preparing top-up of {} for session {} (total approval {})',
                        deposit, existing.id, from_units(total_units))
        else:
            delegate = Keypair()
            encrypted = self.vault.encrypt(bytes(delegate))
            total_units = deposit_units
            logger.info('Preparing new session for {} with deposit {}',
                        user_wallet, deposit)

        balance_units = self.chain.get_token_balance(user_wallet)
        if deposit_units > balance_units:
            raise InsufficientBalance(
                f'Wallet holds {from_units(balance_units)} USDC, '
                f'deposit needs {deposit}.',
                required=str(deposit),
                available=str(from_units(balance_units)),
            )
        if total_units > balance_units:
            raise ApprovalExceedsBalance(
                f'Total approval {from_units(total_units)} USDC exceeds wallet '
                f'balance {from_units(balance_units)} USDC.',
                total_approval=str(from_units(total_units)),
                available=str(from_units(balance_units)),
            )

        delegate_public_key = str(delegate.pubkey())
        instruction = self.chain.build_approval_instruction(
            user_wallet, delegate_public_key, total_units)
        unsigned = self.chain.build_unsigned_transaction([instruction], user_wallet)

        pending = PendingSession(
            session_id=str(uuid.uuid4()),
            user_wallet=user_wallet,
            delegate_public_key=delegate_public_key,
            delegate_key_encrypted=encrypted,
            deposit_units=deposit_units,
            total_approval_units=total_units,
            is_top_up=existing is not None,
            expires_in_hours=hours,
            existing_session_id=str(existing.id) if existing is not None else None,
            existing_remaining_units=existing.remaining_units if existing is not None else None,
        )
        self.pending.put(pending)

        return PreparedSession(
            session_id=pending.session_id,
            transaction=unsigned,
            delegate_public_key=delegate_public_key,
            deposit_amount=from_units(deposit_units),
            total_approval=from_units(total_units),
            is_top_up=pending.is_top_up,
        )

    def confirm_session(
        self,
        session_id: str,
        signed_transaction: Optional[str] = None,
        signature: Optional[str] = None,
    ) -> SessionSnapshot:
        """
        Wait for a prepared approval on-chain and record the session.

        Pass either the signed transaction (broadcast here) or the signature
        of one the wallet already broadcast. A pending entry is consumed at
        most once; retryable chain errors hand it back for another attempt.
        """
        if bool(signed_transaction) == bool(signature):
            raise ValidationError(
                'Provide exactly one of approvalTransaction or transactionSignature.')

        pending = self.pending.claim(session_id)
        if pending is None:
            raise SessionNotFound(
                'Pending session not found or expired. Please create a new session.',
                session_id=session_id,
            )

        try:
            if signed_transaction:
                signature = self.chain.send_raw_transaction(signed_transaction)
            result = self.chain.confirm(signature)
            if not result.ok:
                raise ProgramError(
                    f'Approval transaction failed on-chain: {result.err}',
                    signature=signature,
                )
        except ChainSubmissionError as exc:
            if exc.retryable:
                self.pending.release(session_id)
            else:
                self.pending.delete(session_id)
            logger.error('Confirmation of session {} failed: {}', session_id, exc.message)
            raise
        except ValidationError:
            self.pending.release(session_id)
            raise

        expires_at = timezone.now() + timedelta(hours=pending.expires_in_hours)
        try:
            session = self._apply_confirmed(pending, signature, expires_at)
        except Exception:
            self.pending.release(session_id)
            raise
        self.pending.delete(session_id)
        return SessionSnapshot.from_model(session)

    def _apply_confirmed(self, pending: PendingSession, signature: str,
                         expires_at: datetime) -> SpendingSession:
        if pending.is_top_up:
            current = self.store.get(pending.existing_session_id)
            if (current is not None
                    and current.remaining_units != pending.existing_remaining_units):
                # The on-chain approval was sized from the prepare-time balance.
                logger.warning(
                    'Session {} remaining moved from {} to {} between prepare and '
                    'confirm; on-chain approval is {}, ledger will hold {}',
                    pending.existing_session_id,
                    from_units(pending.existing_remaining_units),
                    current.remaining_amount,
                    from_units(pending.total_approval_units),
                    from_units(current.remaining_units + pending.deposit_units))
            if self.store.apply_top_up(pending.existing_session_id,
                                       pending.deposit_units, signature, expires_at):
                logger.info('Session {} topped up by {} (tx {})',
                            pending.existing_session_id,
                            from_units(pending.deposit_units), signature)
                return self.store.get(pending.existing_session_id)
            logger.warning(
                'Session {} closed before its top-up confirmed; opening a new '
                'session with the deposit only', pending.existing_session_id)
            approved_units = pending.deposit_units
        else:
            approved_units = pending.total_approval_units

        session = SpendingSession(
            id=uuid.UUID(pending.session_id),
            user=self.users.resolve(pending.user_wallet) if self.users else None,
            user_wallet=pending.user_wallet,
            delegate_public_key=pending.delegate_public_key,
            delegate_key_encrypted=pending.delegate_key_encrypted,
            approved_units=approved_units,
            spent_units=0,
            remaining_units=approved_units,
            approval_signature=signature,
            status=SpendingSession.Status.ACTIVE,
            expires_at=expires_at,
        )
        # A token account holds one delegate, so the newest approval replaces
        # whatever session the wallet had.
        for attempt in (1, 2):
            try:
                with transaction.atomic():
                    superseded = self.store.supersede_active(pending.user_wallet)
                    self.store.insert(session)
                break
            except DatabaseIntegrityError:
                if attempt == 2:
                    raise
                logger.warning('Concurrent session insert for {}, retrying',
                               pending.user_wallet)
        if superseded:
            logger.info('Superseded {} active session(s) of {}',
                        superseded, pending.user_wallet)
        logger.info('Session {} created for {} with {} USDC (tx {})',
                    session.id, pending.user_wallet, session.approved_amount, signature)
        return session

    # -- queries ------------------------------------------------------------

    def get_active_session(self, user_wallet: str) -> Optional[SessionSnapshot]:
        """Active session of the wallet, returned even when past its expiry."""
        session = self.store.get_active_by_wallet(user_wallet)
        if session is None:
            return None
        return SessionSnapshot.from_model(session)

    def get_session_balance(self, user_wallet: str) -> Dict[str, Any]:
        snapshot = self.get_active_session(self._require_wallet(user_wallet))
        if snapshot is None:
            return {'hasSession': False}
        return {
            'hasSession': True,
            'sessionId': snapshot.id,
            'approvedAmount': str(snapshot.approved_amount),
            'spentAmount': str(snapshot.spent_amount),
            'remainingAmount': str(snapshot.remaining_amount),
            'expiresAt': snapshot.expires_at.isoformat(),
            'isExpired': snapshot.is_expired,
            'status': snapshot.status,
        }

    # -- spending -----------------------------------------------------------

    def authorize_spend(self, user_wallet: str, amount: Amount) -> SpendAuthorization:
        """Check a spend is affordable. Mutates nothing."""
        amount_units = to_units(amount)
        if amount_units <= 0:
            raise ValidationError('Spend amount must be greater than 0.')

        session = self.store.get_active_by_wallet(user_wallet)
        if session is None:
            raise NoActiveSession(
                'No active session. Deposit USDC to start one.',
                required=str(from_units(amount_units)),
            )
        if session.is_expired():
            raise SessionExpired(
                'Session expired. Deposit USDC to start a new one.',
                session_id=str(session.id),
                expires_at=session.expires_at.isoformat(),
            )
        if amount_units > session.remaining_units:
            raise InsufficientSessionBalance(
                f'Session has {session.remaining_amount} USDC, '
                f'{from_units(amount_units)} needed. Top up to continue.',
                session_id=str(session.id),
                required=str(from_units(amount_units)),
                remaining=str(session.remaining_amount),
            )

        return SpendAuthorization(
            session_id=str(session.id),
            user_wallet=user_wallet,
            delegate=self._load_delegate(session),
            amount_units=amount_units,
            remaining_units=session.remaining_units,
        )

    def record_spend(self, session_id: str, amount_units: int) -> None:
        """
        Book a spend against the session with a compare-and-decrement.

        Payments book the spend before submitting its transfer, so two spends
        racing on one session cannot both pass.

        Raises:
            InsufficientSessionBalance: a concurrent spend consumed the balance first
        """
        if not self.store.update_spending(session_id, amount_units):
            raise InsufficientSessionBalance(
                'Session balance was used by another payment. Top up to continue.',
                session_id=session_id,
                required=str(from_units(amount_units)),
            )
        logger.info('Recorded spend of {} on session {}',
                    from_units(amount_units), session_id)

    def refund_spend(self, session_id: str, amount_units: int) -> bool:
        """Give back a booked spend whose transfer is known not to have landed."""
        if not self.store.refund_spending(session_id, amount_units):
            logger.error('Session {} could not refund spend of {}',
                         session_id, from_units(amount_units))
            return False
        logger.info('Refunded spend of {} on session {}',
                    from_units(amount_units), session_id)
        return True

    # -- closing ------------------------------------------------------------

    def withdraw(self, user_wallet: str, amount: Optional[Amount] = None) -> WithdrawResult:
        """
        Give back part or all of the remaining allowance.

        Comparisons happen at cent precision. Withdrawing the whole remaining
        balance (or passing no amount) revokes the session.
        """
        self._require_wallet(user_wallet)
        session = self.store.get_active_by_wallet(user_wallet)
        if session is None:
            raise NoActiveSession('No active session to withdraw from.')

        remaining_units = session.approved_units - session.spent_units
        if remaining_units < 0:
            raise LedgerDriftError(
                'Session has spent more than it approved.',
                session_id=str(session.id),
                approved=str(session.approved_amount),
                spent=str(session.spent_amount),
            )
        drift = from_units(abs(remaining_units - session.remaining_units))
        if drift > self.drift_tolerance:
            logger.warning(
                'Ledger drift on session {}: stored remaining {} vs approved-spent {}',
                session.id, session.remaining_amount, from_units(remaining_units))

        remaining = from_units(remaining_units)
        rounded_remaining = round_cents(remaining)
        if rounded_remaining <= 0:
            raise InvalidWithdrawAmount('No remaining credits to withdraw.')

        requested = rounded_remaining if amount is None else round_cents(amount)
        if requested <= 0:
            raise InvalidWithdrawAmount('Withdrawal amount must be greater than 0.')
        if requested > rounded_remaining:
            raise InvalidWithdrawAmount(
                f'Insufficient balance. You have {rounded_remaining} USDC remaining.',
                remaining=str(rounded_remaining),
            )

        if requested == rounded_remaining:
            if not self.store.mark_revoked(session.id):
                raise NoActiveSession('Session was closed concurrently.')
            logger.info('Session {} closed, {} USDC withdrawn', session.id, remaining)
            return WithdrawResult(
                session_id=str(session.id),
                withdrawn_amount=remaining,
                session_closed=True,
            )

        if not self.store.reduce_approval(session.id, to_units(requested)):
            raise InvalidWithdrawAmount(
                'Remaining balance changed during withdrawal. Please retry.')
        updated = self.store.get(session.id)
        logger.info('Partial withdrawal of {} from session {}, {} remaining',
                    requested, session.id, updated.remaining_amount)
        return WithdrawResult(
            session_id=str(session.id),
            withdrawn_amount=requested,
            session_closed=False,
            new_remaining_balance=updated.remaining_amount,
        )

    def revoke_session(self, session_id: str, user_wallet: str) -> None:
        session = self.store.get(session_id)
        if (session is None or session.user_wallet != user_wallet
                or session.status != SpendingSession.Status.ACTIVE):
            raise NoActiveSession('Active session not found for this wallet.',
                                  session_id=session_id)
        if not self.store.mark_revoked(session.id):
            raise NoActiveSession('Session was closed concurrently.',
                                  session_id=session_id)
        logger.info('Session {} revoked by {}', session_id, user_wallet)

    def expire_stale_sessions(self, now: Optional[datetime] = None) -> int:
        stale = self.store.find_stale(now or timezone.now())
        count = self.store.mark_expired(stale)
        if count:
            logger.info('Expired {} stale session(s)', count)
        return count
