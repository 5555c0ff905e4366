from decimal import Decimal

from django.conf import settings
from django.db import migrations, models
import django.db.models.deletion


class Migration(migrations.Migration):
    initial = True

    dependencies = [
        ("members", "0001_initial"),
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name="Subscription",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                ("start_date", models.DateTimeField()),
                ("end_date", models.DateTimeField()),
                ("status", models.CharField(choices=[("active", "Active"), ("paused", "Paused"), ("frozen", "Frozen"), ("expired", "Expired"), ("cancelled", "Cancelled")], default="active", max_length=20)),
                ("price", models.DecimalField(decimal_places=2, max_digits=12)),
                ("discount", models.DecimalField(decimal_places=2, default=Decimal("0.00"), max_digits=12)),
                ("paid_amount", models.DecimalField(decimal_places=2, default=Decimal("0.00"), max_digits=12)),
                ("payment_status", models.CharField(choices=[("unpaid", "Unpaid"), ("partial", "Partial"), ("paid", "Paid")], default="unpaid", max_length=10)),
                ("notes", models.TextField(blank=True)),
                ("frozen_at", models.DateTimeField(blank=True, null=True)),
                ("frozen_until", models.DateTimeField(blank=True, null=True)),
                ("frozen_days", models.PositiveIntegerField(default=0)),
                ("cancelled_at", models.DateTimeField(blank=True, null=True)),
                ("cancel_reason", models.CharField(blank=True, max_length=255)),
                ("cancel_source", models.CharField(blank=True, choices=[("manual", "Manual"), ("auto_refund", "Automatic (fully refunded)")], max_length=20)),
                ("used_non_refundable_amount", models.DecimalField(decimal_places=2, default=Decimal("0.00"), max_digits=12)),
                ("alert_acknowledged", models.BooleanField(default=False)),
                ("alert_acknowledged_at", models.DateTimeField(blank=True, null=True)),
                ("idempotency_key", models.CharField(blank=True, max_length=100, null=True, unique=True)),
                ("alert_acknowledged_by", models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name="acknowledged_subscriptions", to=settings.AUTH_USER_MODEL)),
                ("cancelled_by", models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name="cancelled_subscriptions", to=settings.AUTH_USER_MODEL)),
                ("created_by", models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name="subscriptions_created", to=settings.AUTH_USER_MODEL)),
                ("member", models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, related_name="subscriptions", to="members.member")),
                ("plan", models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, related_name="subscriptions", to="members.plan")),
                ("previous_subscription", models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name="renewals", to="subscriptions.subscription")),
            ],
            options={
                "ordering": ["-created_at", "-id"],
                "indexes": [
                    models.Index(fields=["member", "status"], name="subs_member_status_idx"),
                    models.Index(fields=["status", "end_date"], name="subs_status_end_date_idx"),
                ],
                "constraints": [
                    models.UniqueConstraint(condition=models.Q(("status", "active")), fields=("member",), name="uniq_active_subscription_member"),
                    models.CheckConstraint(condition=models.Q(("discount__gte", 0), ("discount__lte", models.F("price"))), name="subscription_discount_within_price"),
                    models.CheckConstraint(condition=models.Q(("paid_amount__gte", 0)), name="subscription_paid_non_negative"),
                ],
            },
        ),
        migrations.CreateModel(
            name="PauseInterval",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("started_at", models.DateTimeField()),
                ("ended_at", models.DateTimeField(blank=True, null=True)),
                ("duration_days", models.PositiveIntegerField(default=0)),
                ("reason", models.CharField(blank=True, max_length=255)),
                ("subscription", models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name="pause_intervals", to="subscriptions.subscription")),
            ],
            options={
                "ordering": ["started_at", "id"],
            },
        ),
    ]
