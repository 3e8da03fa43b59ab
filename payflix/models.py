import uuid
from datetime import datetime, timezone as datetime_timezone
from decimal import Decimal

from django.db import models
from django.db.models import Q
from django.utils import timezone

from payflix.money import from_units

# Permanent purchases carry a far-future expiry instead of NULL.
PERMANENT_ACCESS_EXPIRY = datetime(2099, 12, 31, tzinfo=datetime_timezone.utc)


class WalletUser(models.Model):
    """Viewer or creator identified by wallet. Provisioned on first contact."""

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    wallet_address = models.CharField(max_length=64, unique=True)
    username = models.CharField(max_length=64, blank=True)
    is_creator = models.BooleanField(default=False)
    created_at = models.DateTimeField(auto_now_add=True)

    def __str__(self) -> str:
        return self.username or self.wallet_address


class Video(models.Model):
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    creator = models.ForeignKey(
        WalletUser, null=True, blank=True, on_delete=models.SET_NULL,
        related_name='videos')
    creator_wallet = models.CharField(max_length=64, blank=True)
    title = models.CharField(max_length=255)
    price_usdc = models.DecimalField(max_digits=18, decimal_places=6)
    views = models.PositiveIntegerField(default=0)
    earnings = models.DecimalField(
        max_digits=18, decimal_places=6, default=Decimal('0'))
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    def __str__(self) -> str:
        return self.title


class SpendingSession(models.Model):
    """
    Delegated spending allowance of one wallet.

    Balances are token base units; ``remaining_units`` always equals
    ``approved_units - spent_units``. Rows are never deleted: closed sessions
    stay as revoked or expired.
    """

    class Status(models.TextChoices):
        ACTIVE = 'active', 'Active'
        REVOKED = 'revoked', 'Revoked'
        EXPIRED = 'expired', 'Expired'

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    user = models.ForeignKey(
        WalletUser, null=True, blank=True, on_delete=models.SET_NULL,
        related_name='sessions')
    user_wallet = models.CharField(max_length=64, db_index=True)
    delegate_public_key = models.CharField(max_length=64)
    delegate_key_encrypted = models.TextField()
    approved_units = models.BigIntegerField(default=0)
    spent_units = models.BigIntegerField(default=0)
    remaining_units = models.BigIntegerField(default=0)
    approval_signature = models.CharField(max_length=128)
    status = models.CharField(
        max_length=16,
        choices=Status.choices,
        default=Status.ACTIVE,
    )
    expires_at = models.DateTimeField()
    closed_at = models.DateTimeField(blank=True, null=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ['-created_at']
        constraints = [
            models.UniqueConstraint(
                fields=['user_wallet'],
                condition=Q(status='active'),
                name='payflix_one_active_session_per_wallet',
            ),
        ]

    def __str__(self) -> str:
        return f'{self.user_wallet} ({self.status})'

    @property
    def approved_amount(self) -> Decimal:
        return from_units(self.approved_units)

    @property
    def spent_amount(self) -> Decimal:
        return from_units(self.spent_units)

    @property
    def remaining_amount(self) -> Decimal:
        return from_units(self.remaining_units)

    def is_expired(self, now=None) -> bool:
        return self.expires_at <= (now or timezone.now())


class Payment(models.Model):
    class Status(models.TextChoices):
        PENDING = 'pending', 'Pending'
        VERIFIED = 'verified', 'Verified'
        FAILED = 'failed', 'Failed'

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    video = models.ForeignKey(Video, on_delete=models.PROTECT, related_name='payments')
    user = models.ForeignKey(WalletUser, on_delete=models.PROTECT, related_name='payments')
    user_wallet = models.CharField(max_length=64)
    creator_wallet = models.CharField(max_length=64)
    amount = models.DecimalField(max_digits=18, decimal_places=6)
    creator_amount = models.DecimalField(max_digits=18, decimal_places=6)
    platform_amount = models.DecimalField(max_digits=18, decimal_places=6)
    transaction_signature = models.CharField(max_length=128, unique=True)
    status = models.CharField(
        max_length=16,
        choices=Status.choices,
        default=Status.PENDING,
    )
    verified_at = models.DateTimeField(blank=True, null=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ['-created_at']
        constraints = [
            models.UniqueConstraint(
                fields=['user', 'video'],
                condition=Q(status='verified'),
                name='payflix_one_verified_payment_per_video',
            ),
        ]

    def mark_verified(self) -> None:
        self.status = self.Status.VERIFIED
        self.verified_at = timezone.now()


class VideoAccess(models.Model):
    user = models.ForeignKey(WalletUser, on_delete=models.CASCADE, related_name='video_access')
    video = models.ForeignKey(Video, on_delete=models.CASCADE, related_name='access_grants')
    payment = models.ForeignKey(Payment, on_delete=models.PROTECT, related_name='access_grants')
    granted_at = models.DateTimeField(default=timezone.now)
    expires_at = models.DateTimeField(default=PERMANENT_ACCESS_EXPIRY)

    class Meta:
        constraints = [
            models.UniqueConstraint(
                fields=['user', 'video'], name='payflix_unique_video_access'),
        ]


class VideoAnalytics(models.Model):
    video = models.ForeignKey(Video, on_delete=models.CASCADE, related_name='analytics')
    date = models.DateField()
    views = models.PositiveIntegerField(default=0)
    revenue = models.DecimalField(max_digits=18, decimal_places=6, default=Decimal('0'))

    class Meta:
        constraints = [
            models.UniqueConstraint(
                fields=['video', 'date'], name='payflix_video_analytics_day'),
        ]


class CreatorAnalytics(models.Model):
    creator_wallet = models.CharField(max_length=64)
    date = models.DateField()
    views = models.PositiveIntegerField(default=0)
    revenue = models.DecimalField(max_digits=18, decimal_places=6, default=Decimal('0'))

    class Meta:
        constraints = [
            models.UniqueConstraint(
                fields=['creator_wallet', 'date'], name='payflix_creator_analytics_day'),
        ]


class X402Authorization(models.Model):
    """Third-party x402 payment seen by the facilitator gateway."""

    class Status(models.TextChoices):
        VERIFIED = 'verified', 'Verified'
        SETTLED = 'settled', 'Settled'

    nonce = models.CharField(max_length=66, unique=True)
    payer = models.CharField(max_length=64)
    pay_to = models.CharField(max_length=64)
    amount_units = models.BigIntegerField()
    network = models.CharField(max_length=32)
    payment_requirements = models.JSONField()
    status = models.CharField(
        max_length=16,
        choices=Status.choices,
        default=Status.VERIFIED,
    )
    # Solana signatures are base58, ~88 chars.
    transaction_signature = models.CharField(max_length=128, blank=True, null=True)
    settled_at = models.DateTimeField(blank=True, null=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ['-created_at']

    def mark_settled(self, signature: str) -> None:
        self.status = self.Status.SETTLED
        self.transaction_signature = signature
        self.settled_at = timezone.now()
