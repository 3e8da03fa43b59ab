"""
Persistence collaborators for the ledger and the orchestrator.

Each interface has a Django ORM implementation. Balance mutations are single
conditional UPDATE statements so concurrent requests cannot overspend a
session even without an in-process lock.
"""
from abc import ABC, abstractmethod
from datetime import date, datetime
from decimal import Decimal
from typing import List, Optional

from django.core.cache import caches
from django.core.exceptions import ValidationError as DjangoValidationError
from django.db import transaction
from django.db.models import F, Sum
from django.utils import timezone
from loguru import logger

from payflix.models import (
    CreatorAnalytics,
    Payment,
    SpendingSession,
    Video,
    VideoAccess,
    VideoAnalytics,
    WalletUser,
)


class SessionStore(ABC):
    @abstractmethod
    def get(self, session_id) -> Optional[SpendingSession]:
        ...

    @abstractmethod
    def get_active_by_wallet(self, wallet: str) -> Optional[SpendingSession]:
        ...

    @abstractmethod
    def insert(self, session: SpendingSession) -> SpendingSession:
        ...

    @abstractmethod
    def supersede_active(self, wallet: str) -> int:
        """Revoke whatever session of the wallet is still active."""

    @abstractmethod
    def apply_top_up(self, session_id, deposit_units: int, approval_signature: str,
                     expires_at: datetime) -> bool:
        ...

    @abstractmethod
    def update_spending(self, session_id, delta_units: int) -> bool:
        """Compare-and-decrement; False when the remaining balance is short."""

    @abstractmethod
    def refund_spending(self, session_id, delta_units: int) -> bool:
        """Reverse a booked spend; False when less than that was spent."""

    @abstractmethod
    def reduce_approval(self, session_id, units: int) -> bool:
        ...

    @abstractmethod
    def mark_revoked(self, session_id) -> bool:
        ...

    @abstractmethod
    def find_stale(self, now: datetime) -> List:
        ...

    @abstractmethod
    def mark_expired(self, session_ids: List) -> int:
        ...


class DjangoSessionStore(SessionStore):
    def get(self, session_id) -> Optional[SpendingSession]:
        try:
            return SpendingSession.objects.filter(pk=session_id).first()
        except (DjangoValidationError, ValueError, TypeError):
            return None

    def get_active_by_wallet(self, wallet: str) -> Optional[SpendingSession]:
        return SpendingSession.objects.filter(
            user_wallet=wallet,
            status=SpendingSession.Status.ACTIVE,
        ).first()

    def insert(self, session: SpendingSession) -> SpendingSession:
        session.save(force_insert=True)
        return session

    def supersede_active(self, wallet: str) -> int:
        return SpendingSession.objects.filter(
            user_wallet=wallet,
            status=SpendingSession.Status.ACTIVE,
        ).update(
            status=SpendingSession.Status.REVOKED,
            closed_at=timezone.now(),
            updated_at=timezone.now(),
        )

    def apply_top_up(self, session_id, deposit_units: int, approval_signature: str,
                     expires_at: datetime) -> bool:
        updated = SpendingSession.objects.filter(
            pk=session_id,
            status=SpendingSession.Status.ACTIVE,
        ).update(
            approved_units=F('approved_units') + deposit_units,
            remaining_units=F('remaining_units') + deposit_units,
            approval_signature=approval_signature,
            expires_at=expires_at,
            updated_at=timezone.now(),
        )
        return updated == 1

    def update_spending(self, session_id, delta_units: int) -> bool:
        updated = SpendingSession.objects.filter(
            pk=session_id,
            status=SpendingSession.Status.ACTIVE,
            remaining_units__gte=delta_units,
        ).update(
            spent_units=F('spent_units') + delta_units,
            remaining_units=F('remaining_units') - delta_units,
            updated_at=timezone.now(),
        )
        return updated == 1

    def refund_spending(self, session_id, delta_units: int) -> bool:
        updated = SpendingSession.objects.filter(
            pk=session_id,
            spent_units__gte=delta_units,
        ).update(
            spent_units=F('spent_units') - delta_units,
            remaining_units=F('remaining_units') + delta_units,
            updated_at=timezone.now(),
        )
        return updated == 1

    def reduce_approval(self, session_id, units: int) -> bool:
        # Remaining is recomputed from approved - spent in the same statement.
        updated = SpendingSession.objects.filter(
            pk=session_id,
            status=SpendingSession.Status.ACTIVE,
            approved_units__gte=F('spent_units') + units,
        ).update(
            approved_units=F('approved_units') - units,
            remaining_units=F('approved_units') - units - F('spent_units'),
            updated_at=timezone.now(),
        )
        return updated == 1

    def mark_revoked(self, session_id) -> bool:
        updated = SpendingSession.objects.filter(
            pk=session_id,
            status=SpendingSession.Status.ACTIVE,
        ).update(
            status=SpendingSession.Status.REVOKED,
            closed_at=timezone.now(),
            updated_at=timezone.now(),
        )
        return updated == 1

    def find_stale(self, now: datetime) -> List:
        return list(SpendingSession.objects.filter(
            status=SpendingSession.Status.ACTIVE,
            expires_at__lt=now,
        ).values_list('id', flat=True))

    def mark_expired(self, session_ids: List) -> int:
        if not session_ids:
            return 0
        return SpendingSession.objects.filter(
            pk__in=session_ids,
            status=SpendingSession.Status.ACTIVE,
        ).update(
            status=SpendingSession.Status.EXPIRED,
            closed_at=timezone.now(),
            updated_at=timezone.now(),
        )


class VideoRepository(ABC):
    @abstractmethod
    def get_by_id(self, video_id) -> Optional[Video]:
        ...

    @abstractmethod
    def update_earnings(self, video_id, new_total: Decimal) -> None:
        ...

    @abstractmethod
    def increment_views(self, video_id) -> None:
        ...


class DjangoVideoRepository(VideoRepository):
    def get_by_id(self, video_id) -> Optional[Video]:
        try:
            return Video.objects.filter(pk=video_id).first()
        except (DjangoValidationError, ValueError, TypeError):
            # Malformed ids are simply unknown videos.
            return None

    def update_earnings(self, video_id, new_total: Decimal) -> None:
        Video.objects.filter(pk=video_id).update(
            earnings=new_total, updated_at=timezone.now())

    def increment_views(self, video_id) -> None:
        Video.objects.filter(pk=video_id).update(views=F('views') + 1)


class DjangoUserDirectory:
    """Resolves wallets to accounts, provisioning viewers on first contact."""

    def resolve(self, wallet: str) -> WalletUser:
        user, created = WalletUser.objects.get_or_create(
            wallet_address=wallet,
            defaults={'username': f'User {wallet[:8]}'},
        )
        if created:
            logger.info('Provisioned account for wallet {}', wallet)
        return user


class DjangoPaymentStore:
    def get_verified(self, user: WalletUser, video: Video) -> Optional[Payment]:
        return Payment.objects.filter(
            user=user,
            video=video,
            status=Payment.Status.VERIFIED,
        ).first()

    def creator_earnings(self, video: Video) -> Decimal:
        total = Payment.objects.filter(
            video=video,
            status=Payment.Status.VERIFIED,
        ).aggregate(total=Sum('creator_amount'))['total']
        return total or Decimal('0')

    def record_unlock(self, payment: Payment) -> Payment:
        """
        Persist a settled payment together with its access grant.

        Raises:
            django.db.IntegrityError: a verified payment for the pair already exists
        """
        with transaction.atomic():
            payment.save(force_insert=True)
            VideoAccess.objects.update_or_create(
                user=payment.user,
                video=payment.video,
                defaults={'payment': payment, 'granted_at': timezone.now()},
            )
        return payment


class AnalyticsSink(ABC):
    @abstractmethod
    def record_video_delta(self, video_id, views: int, revenue: Decimal) -> None:
        ...

    @abstractmethod
    def record_creator_delta(self, creator_wallet: str, views: int, revenue: Decimal) -> None:
        ...


class DjangoAnalyticsSink(AnalyticsSink):
    """Daily upsert counters for the creator dashboard."""

    @staticmethod
    def _today() -> date:
        return timezone.now().date()

    def record_video_delta(self, video_id, views: int, revenue: Decimal) -> None:
        with transaction.atomic():
            row, _ = VideoAnalytics.objects.get_or_create(
                video_id=video_id, date=self._today())
            VideoAnalytics.objects.filter(pk=row.pk).update(
                views=F('views') + views, revenue=F('revenue') + revenue)

    def record_creator_delta(self, creator_wallet: str, views: int, revenue: Decimal) -> None:
        with transaction.atomic():
            row, _ = CreatorAnalytics.objects.get_or_create(
                creator_wallet=creator_wallet, date=self._today())
            CreatorAnalytics.objects.filter(pk=row.pk).update(
                views=F('views') + views, revenue=F('revenue') + revenue)


class CreatorProfileCache:
    """Cached public creator profile read model; invalidated when stats move."""

    KEY_PREFIX = 'payflix:creator-profile:'

    def __init__(self, alias: str = 'default'):
        self._alias = alias

    def key_for(self, wallet: str) -> str:
        return f'{self.KEY_PREFIX}{wallet}'

    def invalidate(self, wallet: str) -> None:
        caches[self._alias].delete(self.key_for(wallet))


__all__ = [
    'AnalyticsSink',
    'CreatorProfileCache',
    'DjangoAnalyticsSink',
    'DjangoPaymentStore',
    'DjangoSessionStore',
    'DjangoUserDirectory',
    'DjangoVideoRepository',
    'SessionStore',
    'VideoRepository',
]
