from decimal import Decimal

from django.conf import settings
from django.db import migrations, models
import django.db.models.deletion


class Migration(migrations.Migration):
    initial = True

    dependencies = [
        ("members", "0001_initial"),
        ("subscriptions", "0001_initial"),
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name="POSMachine",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                ("machine_key", models.CharField(max_length=120, unique=True)),
                ("name", models.CharField(default="Counter POS", max_length=120)),
                ("status", models.CharField(choices=[("active", "Active"), ("disabled", "Disabled")], default="active", max_length=20)),
            ],
            options={
                "abstract": False,
            },
        ),
        migrations.CreateModel(
            name="Shift",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("opened_at", models.DateTimeField()),
                ("closed_at", models.DateTimeField(blank=True, null=True)),
                ("opening_cash", models.DecimalField(decimal_places=2, default=Decimal("0.00"), max_digits=12)),
                ("closing_cash", models.DecimalField(blank=True, decimal_places=2, max_digits=12, null=True)),
                ("expected_cash", models.DecimalField(blank=True, decimal_places=2, max_digits=12, null=True)),
                ("cash_difference", models.DecimalField(blank=True, decimal_places=2, max_digits=12, null=True)),
                ("status", models.CharField(choices=[("open", "Open"), ("closed", "Closed")], default="open", max_length=10)),
                ("activity_type", models.CharField(choices=[("NORMAL", "Normal"), ("NO_ACTIVITY", "No Activity")], default="NORMAL", max_length=20)),
                ("notes", models.TextField(blank=True)),
                ("closed_by", models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name="closed_shifts", to=settings.AUTH_USER_MODEL)),
                ("machine", models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, related_name="shifts", to="pos.posmachine")),
                ("opened_by", models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, related_name="opened_shifts", to=settings.AUTH_USER_MODEL)),
            ],
            options={
                "ordering": ["-opened_at"],
                "constraints": [
                    models.UniqueConstraint(condition=models.Q(("status", "open")), fields=("machine",), name="uniq_open_shift_per_machine"),
                    models.UniqueConstraint(condition=models.Q(("status", "open")), fields=("opened_by",), name="uniq_open_shift_per_user"),
                    models.CheckConstraint(condition=models.Q(("opening_cash__gte", 0)), name="shift_opening_cash_non_negative"),
                ],
            },
        ),
        migrations.CreateModel(
            name="Payment",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                ("amount", models.DecimalField(decimal_places=2, max_digits=12)),
                ("refunded_total", models.DecimalField(decimal_places=2, default=Decimal("0.00"), max_digits=12)),
                ("method", models.CharField(choices=[("cash", "Cash"), ("card", "Card"), ("transfer", "Bank Transfer"), ("wallet", "Wallet"), ("other", "Other")], default="cash", max_length=20)),
                ("status", models.CharField(choices=[("pending", "Pending"), ("completed", "Completed"), ("refunded", "Refunded"), ("partial_refund", "Partial Refund")], default="completed", max_length=20)),
                ("receipt_number", models.CharField(max_length=40, unique=True)),
                ("external_reference", models.CharField(blank=True, db_index=True, max_length=120, null=True)),
                ("paid_at", models.DateTimeField(blank=True, null=True)),
                ("notes", models.TextField(blank=True)),
                ("collector_name", models.CharField(blank=True, max_length=255)),
                ("created_by", models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name="payments_created", to=settings.AUTH_USER_MODEL)),
                ("member", models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, related_name="payments", to="members.member")),
                ("shift", models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.PROTECT, related_name="payments", to="pos.shift")),
                ("subscription", models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.PROTECT, related_name="payments", to="subscriptions.subscription")),
            ],
            options={
                "ordering": ["-paid_at", "-id"],
                "indexes": [
                    models.Index(fields=["shift", "method", "status"], name="pos_payment_shift_method_idx"),
                ],
                "constraints": [
                    models.CheckConstraint(condition=models.Q(("amount__gte", 0)), name="payment_amount_non_negative"),
                    models.CheckConstraint(condition=models.Q(("refunded_total__gte", 0), ("refunded_total__lte", models.F("amount"))), name="payment_refunded_within_amount"),
                ],
            },
        ),
        migrations.CreateModel(
            name="Refund",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                ("amount", models.DecimalField(decimal_places=2, max_digits=12)),
                ("reason", models.CharField(blank=True, max_length=255)),
                ("goodwill", models.BooleanField(default=False)),
                ("created_by", models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name="refunds_created", to=settings.AUTH_USER_MODEL)),
                ("payment", models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, related_name="refunds", to="pos.payment")),
                ("shift", models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, related_name="refunds", to="pos.shift")),
            ],
            options={
                "constraints": [
                    models.CheckConstraint(condition=models.Q(("amount__gt", 0)), name="refund_amount_positive"),
                ],
            },
        ),
    ]
