import datetime
import uuid
from decimal import Decimal

import django.db.models.deletion
import django.utils.timezone
from django.db import migrations, models


class Migration(migrations.Migration):
    initial = True

    dependencies = []

    operations = [
        migrations.CreateModel(
            name="WalletUser",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("wallet_address", models.CharField(max_length=64, unique=True)),
                ("username", models.CharField(blank=True, max_length=64)),
                ("is_creator", models.BooleanField(default=False)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
            ],
        ),
        migrations.CreateModel(
            name="Video",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("creator_wallet", models.CharField(blank=True, max_length=64)),
                ("title", models.CharField(max_length=255)),
                ("price_usdc", models.DecimalField(decimal_places=6, max_digits=18)),
                ("views", models.PositiveIntegerField(default=0)),
                ("earnings", models.DecimalField(decimal_places=6, default=Decimal("0"), max_digits=18)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                (
                    "creator",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="videos",
                        to="payflix.walletuser",
                    ),
                ),
            ],
        ),
        migrations.CreateModel(
            name="SpendingSession",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("user_wallet", models.CharField(db_index=True, max_length=64)),
                ("delegate_public_key", models.CharField(max_length=64)),
                ("delegate_key_encrypted", models.TextField()),
                ("approved_units", models.BigIntegerField(default=0)),
                ("spent_units", models.BigIntegerField(default=0)),
                ("remaining_units", models.BigIntegerField(default=0)),
                ("approval_signature", models.CharField(max_length=128)),
                (
                    "status",
                    models.CharField(
                        choices=[("active", "Active"), ("revoked", "Revoked"), ("expired", "Expired")],
                        default="active",
                        max_length=16,
                    ),
                ),
                ("expires_at", models.DateTimeField()),
                ("closed_at", models.DateTimeField(blank=True, null=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                (
                    "user",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="sessions",
                        to="payflix.walletuser",
                    ),
                ),
            ],
            options={
                "ordering": ["-created_at"],
                "constraints": [
                    models.UniqueConstraint(
                        condition=models.Q(("status", "active")),
                        fields=("user_wallet",),
                        name="payflix_one_active_session_per_wallet",
                    )
                ],
            },
        ),
        migrations.CreateModel(
            name="Payment",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("user_wallet", models.CharField(max_length=64)),
                ("creator_wallet", models.CharField(max_length=64)),
                ("amount", models.DecimalField(decimal_places=6, max_digits=18)),
                ("creator_amount", models.DecimalField(decimal_places=6, max_digits=18)),
                ("platform_amount", models.DecimalField(decimal_places=6, max_digits=18)),
                ("transaction_signature", models.CharField(max_length=128, unique=True)),
                (
                    "status",
                    models.CharField(
                        choices=[("pending", "Pending"), ("verified", "Verified"), ("failed", "Failed")],
                        default="pending",
                        max_length=16,
                    ),
                ),
                ("verified_at", models.DateTimeField(blank=True, null=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                (
                    "user",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="payments",
                        to="payflix.walletuser",
                    ),
                ),
                (
                    "video",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="payments",
                        to="payflix.video",
                    ),
                ),
            ],
            options={
                "ordering": ["-created_at"],
                "constraints": [
                    models.UniqueConstraint(
                        condition=models.Q(("status", "verified")),
                        fields=("user", "video"),
                        name="payflix_one_verified_payment_per_video",
                    )
                ],
            },
        ),
        migrations.CreateModel(
            name="VideoAccess",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("granted_at", models.DateTimeField(default=django.utils.timezone.now)),
                (
                    "expires_at",
                    models.DateTimeField(
                        default=datetime.datetime(2099, 12, 31, 0, 0, tzinfo=datetime.timezone.utc)
                    ),
                ),
                (
                    "payment",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="access_grants",
                        to="payflix.payment",
                    ),
                ),
                (
                    "user",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="video_access",
                        to="payflix.walletuser",
                    ),
                ),
                (
                    "video",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="access_grants",
                        to="payflix.video",
                    ),
                ),
            ],
            options={
                "constraints": [
                    models.UniqueConstraint(fields=("user", "video"), name="payflix_unique_video_access")
                ],
            },
        ),
        migrations.CreateModel(
            name="VideoAnalytics",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("date", models.DateField()),
                ("views", models.PositiveIntegerField(default=0)),
                ("revenue", models.DecimalField(decimal_places=6, default=Decimal("0"), max_digits=18)),
                (
                    "video",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="analytics",
                        to="payflix.video",
                    ),
                ),
            ],
            options={
                "constraints": [
                    models.UniqueConstraint(fields=("video", "date"), name="payflix_video_analytics_day")
                ],
            },
        ),
        migrations.CreateModel(
            name="CreatorAnalytics",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("creator_wallet", models.CharField(max_length=64)),
                ("date", models.DateField()),
                ("views", models.PositiveIntegerField(default=0)),
                ("revenue", models.DecimalField(decimal_places=6, default=Decimal("0"), max_digits=18)),
            ],
            options={
                "constraints": [
                    models.UniqueConstraint(
                        fields=("creator_wallet", "date"), name="payflix_creator_analytics_day"
                    )
                ],
            },
        ),
        migrations.CreateModel(
            name="X402Authorization",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("nonce", models.CharField(max_length=66, unique=True)),
                ("payer", models.CharField(max_length=64)),
                ("pay_to", models.CharField(max_length=64)),
                ("amount_units", models.BigIntegerField()),
                ("network", models.CharField(max_length=32)),
                ("payment_requirements", models.JSONField()),
                (
                    "status",
                    models.CharField(
                        choices=[("verified", "Verified"), ("settled", "Settled")],
                        default="verified",
                        max_length=16,
                    ),
                ),
                ("transaction_signature", models.CharField(blank=True, max_length=128, null=True)),
                ("settled_at", models.DateTimeField(blank=True, null=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
            ],
            options={
                "ordering": ["-created_at"],
            },
        ),
    ]
