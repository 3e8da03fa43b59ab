"""
Seamless video unlocks paid from a spending session.

``unlock_video`` is the only writer that triggers a session spend. Its gates
run in a fixed order. The spend is booked with a compare-and-decrement before
the transfer is submitted, which serializes unlocks of different videos
against one session; a rejected or expired transfer is refunded, while a
transfer with an unknown outcome keeps the charge.

The chain transfer is the single step that can leave partial state behind: if
the process dies after the transfer confirms but before the payment row is
written, the user has paid without a recorded grant. There is no compensation
step; the verified-payment check in front of every transfer only keeps a
retry after a recorded payment from charging twice.
"""
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, List, Optional

from django.db import IntegrityError as DatabaseIntegrityError
from loguru import logger
from solders.keypair import Keypair

from payflix.chain import ChainClient
from payflix.errors import (
    BlockhashExpired,
    ChainSubmissionError,
    ConfigurationError,
    InsufficientBalance,
    InsufficientSessionBalance,
    InvalidVideoConfig,
    NoActiveSession,
    PaymentInProgress,
    ProgramError,
    SessionExpired,
    ValidationError,
    VideoNotFound,
)
from payflix.ledger import SessionLedger
from payflix.models import Payment
from payflix.money import Amount, RevenueSplit, from_units, split_revenue, to_decimal
from payflix.pending import CacheLease
from payflix.stores import (
    AnalyticsSink,
    CreatorProfileCache,
    DjangoPaymentStore,
    DjangoUserDirectory,
    VideoRepository,
)


@dataclass
class UnlockResult:
    video_id: str
    signature: str
    already_paid: bool
    message: str
    split: Optional[RevenueSplit] = None
    explorer_url: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            'success': True,
            'alreadyPaid': self.already_paid,
            'signature': self.signature,
            'message': self.message,
        }
        if self.split is not None:
            data['payment'] = {
                'videoId': self.video_id,
                'signature': self.signature,
                'amount': str(self.split.amount),
                'creatorAmount': str(self.split.creator_amount),
                'platformAmount': str(self.split.platform_amount),
                'explorerUrl': self.explorer_url,
            }
        return data


class PaymentOrchestrator:
    def __init__(
        self,
        ledger: SessionLedger,
        chain: ChainClient,
        videos: VideoRepository,
        users: DjangoUserDirectory,
        payments: DjangoPaymentStore,
        analytics: AnalyticsSink,
        profile_cache: CreatorProfileCache,
        lease: CacheLease,
        facilitator: Optional[Keypair],
        platform_fee_wallet: str,
        platform_fee_percent: Amount,
    ):
        self.ledger = ledger
        self.chain = chain
        self.videos = videos
        self.users = users
        self.payments = payments
        self.analytics = analytics
        self.profile_cache = profile_cache
        self.lease = lease
        self.facilitator = facilitator
        self.platform_fee_wallet = platform_fee_wallet
        self.platform_fee_percent = to_decimal(platform_fee_percent)

    def unlock_video(self, video_id: str, user_wallet: str) -> UnlockResult:
        """
        Pay for a video from the viewer's active session and grant access.

        Args:
            video_id: Video to unlock
            user_wallet: Viewer wallet owning the session

        Returns:
            UnlockResult; ``already_paid`` is set when access existed and
            nothing touched the chain

        Raises:
            NoActiveSession / SessionExpired: a deposit is required
            InsufficientSessionBalance: a top-up is required
            InsufficientBalance: the wallet itself cannot cover the price
            PaymentInProgress: another unlock of the same pair is running
            ChainSubmissionError: the transfer failed or its outcome is unknown
        """
        if not video_id or not user_wallet:
            raise ValidationError('videoId and userWallet are required.')
        if not self.chain.validate_address(user_wallet):
            raise ValidationError('Invalid userWallet address.')

        video = self.videos.get_by_id(video_id)
        if video is None:
            raise VideoNotFound('Video not found.', video_id=str(video_id))
        if not video.creator_wallet:
            raise InvalidVideoConfig('Video has no creator wallet configured.',
                                     video_id=str(video.id))
        if video.price_usdc is None or video.price_usdc <= 0:
            raise InvalidVideoConfig('Video has no valid price configured.',
                                     video_id=str(video.id))

        user = self.users.resolve(user_wallet)

        existing = self.payments.get_verified(user, video)
        if existing is not None:
            return self._already_paid(video.id, existing)

        lease_name = f'unlock:{user.id}:{video.id}'
        if not self.lease.acquire(lease_name):
            raise PaymentInProgress(
                'A payment for this video is already in progress.',
                video_id=str(video.id))
        try:
            # Re-check under the lease; the first check ran unguarded.
            existing = self.payments.get_verified(user, video)
            if existing is not None:
                return self._already_paid(video.id, existing)
            return self._pay(video, user)
        finally:
            self.lease.release(lease_name)

    def _already_paid(self, video_id, payment: Payment) -> UnlockResult:
        logger.info('Video {} already unlocked by {}', video_id, payment.user_wallet)
        return UnlockResult(
            video_id=str(video_id),
            signature=payment.transaction_signature,
            already_paid=True,
            message='You already have access to this video',
        )

    def _pay(self, video, user) -> UnlockResult:
        if self.facilitator is None:
            raise ConfigurationError('Facilitator wallet is not configured.')

        try:
            auth = self.ledger.authorize_spend(user.wallet_address, video.price_usdc)
        except (NoActiveSession, SessionExpired, InsufficientSessionBalance) as exc:
            logger.info('Unlock of {} by {} needs {}: {}', video.id,
                        user.wallet_address, exc.action_required.value, exc.message)
            raise

        split = split_revenue(auth.amount_units, self.platform_fee_percent)

        wallet_units = self.chain.get_token_balance(user.wallet_address)
        if wallet_units < split.amount_units:
            raise InsufficientBalance(
                f'Wallet holds {from_units(wallet_units)} USDC, '
                f'{split.amount} needed.',
                required=str(split.amount),
                available=str(from_units(wallet_units)),
            )

        instructions = self._transfer_instructions(
            user.wallet_address, video.creator_wallet, auth.delegate, split)

        # The session is charged before the transfer, so concurrent unlocks of
        # other videos see the reduced balance. Only a transfer known not to
        # have landed is refunded.
        try:
            self.ledger.record_spend(auth.session_id, split.amount_units)
        except InsufficientSessionBalance as exc:
            logger.info('Unlock of {} by {} lost the session balance to a concurrent '
                        'payment: {}', video.id, user.wallet_address, exc.message)
            raise

        try:
            signature = self._submit(user.wallet_address, instructions, auth.delegate)
        except (ProgramError, BlockhashExpired):
            self.ledger.refund_spend(auth.session_id, split.amount_units)
            raise
        except ChainSubmissionError as exc:
            logger.warning('Unlock transfer for video {} has an unknown outcome ({}); '
                           'session {} stays charged', video.id, exc.code, auth.session_id)
            raise
        logger.info('Unlock transfer for video {} confirmed: {}', video.id, signature)

        payment = Payment(
            video=video,
            user=user,
            user_wallet=user.wallet_address,
            creator_wallet=video.creator_wallet,
            amount=split.amount,
            creator_amount=split.creator_amount,
            platform_amount=split.platform_amount,
            transaction_signature=signature,
        )
        payment.mark_verified()
        try:
            self.payments.record_unlock(payment)
        except DatabaseIntegrityError:
            logger.error('Payment for video {} by {} already recorded; tx {} '
                         'is a duplicate charge', video.id, user.wallet_address, signature)
            existing = self.payments.get_verified(user, video)
            if existing is None:
                raise
            return self._already_paid(video.id, existing)

        self.videos.increment_views(video.id)
        self._record_analytics(video, split)
        self.videos.update_earnings(video.id, self.payments.creator_earnings(video))
        self.profile_cache.invalidate(video.creator_wallet)

        logger.info('Video {} unlocked by {} for {} USDC (creator {}, platform {})',
                    video.id, user.wallet_address, split.amount,
                    split.creator_amount, split.platform_amount)
        return UnlockResult(
            video_id=str(video.id),
            signature=signature,
            already_paid=False,
            message='Payment successful! Enjoy your video.',
            split=split,
            explorer_url=self.chain.get_explorer_url(signature),
        )

    def _transfer_instructions(self, user_wallet: str, creator_wallet: str, delegate: Keypair,
                               split: RevenueSplit) -> List[Any]:
        fee_payer = str(self.facilitator.pubkey())
        delegate_key = str(delegate.pubkey())

        instructions: List[Any] = []
        for owner in dict.fromkeys([creator_wallet, self.platform_fee_wallet]):
            create = self.chain.build_create_token_account_instruction(fee_payer, owner)
            if create is not None:
                instructions.append(create)
        if split.creator_units > 0:
            instructions.append(self.chain.build_transfer_instruction(
                user_wallet, creator_wallet, delegate_key, split.creator_units))
        if split.platform_units > 0:
            instructions.append(self.chain.build_transfer_instruction(
                user_wallet, self.platform_fee_wallet, delegate_key, split.platform_units))
        return instructions

    def _submit(self, user_wallet: str, instructions: List[Any], delegate: Keypair) -> str:
        try:
            return self.chain.submit_and_confirm(instructions, [delegate], self.facilitator)
        except ChainSubmissionError as exc:
            logger.error('Unlock transfer from {} failed ({}): {}',
                         user_wallet, exc.code, exc.message)
            raise

    def _record_analytics(self, video, split: RevenueSplit) -> None:
        revenue: Decimal = split.amount
        try:
            self.analytics.record_video_delta(video.id, 1, revenue)
        except Exception as exc:
            logger.warning('Video analytics update for {} failed: {}', video.id, exc)
        try:
            self.analytics.record_creator_delta(video.creator_wallet, 1, revenue)
        except Exception as exc:
            logger.warning('Creator analytics update for {} failed: {}',
                           video.creator_wallet, exc)
