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
            name="MemberPackage",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                ("start_date", models.DateTimeField()),
                ("end_date", models.DateTimeField(blank=True, null=True)),
                ("total_sessions", models.PositiveIntegerField()),
                ("remaining_sessions", models.IntegerField()),
                ("session_name", models.CharField(blank=True, max_length=120)),
                ("session_price", models.DecimalField(blank=True, decimal_places=2, max_digits=12, null=True)),
                ("status", models.CharField(choices=[("ACTIVE", "Active"), ("PAUSED", "Paused"), ("COMPLETED", "Completed"), ("EXPIRED", "Expired")], default="ACTIVE", max_length=20)),
                ("payment_method", models.CharField(blank=True, max_length=20, null=True)),
                ("payment_status", models.CharField(choices=[("unpaid", "Unpaid"), ("partial", "Partial"), ("paid", "Paid")], default="unpaid", max_length=10)),
                ("amount_paid", models.DecimalField(decimal_places=2, default=Decimal("0.00"), max_digits=12)),
                ("created_by", models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name="packages_created", to=settings.AUTH_USER_MODEL)),
                ("member", models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, related_name="packages", to="members.member")),
                ("plan", models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, related_name="member_packages", to="members.plan")),
            ],
            options={
                "ordering": ["-created_at", "-id"],
                "indexes": [
                    models.Index(fields=["status", "end_date"], name="pack_status_end_date_idx"),
                ],
                "constraints": [
                    models.UniqueConstraint(condition=models.Q(("status", "ACTIVE")), fields=("member",), name="uniq_active_package_member"),
                    models.CheckConstraint(condition=models.Q(("total_sessions__gt", 0)), name="package_total_sessions_positive"),
                    models.CheckConstraint(condition=models.Q(("remaining_sessions__gte", 0), ("remaining_sessions__lte", models.F("total_sessions"))), name="package_remaining_within_total"),
                ],
            },
        ),
        migrations.CreateModel(
            name="PackageSessionUsage",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("session_name", models.CharField(blank=True, max_length=120)),
                ("session_price", models.DecimalField(blank=True, decimal_places=2, max_digits=12, null=True)),
                ("source", models.CharField(choices=[("CHECKIN", "Check-in"), ("MANUAL", "Manual")], default="CHECKIN", max_length=20)),
                ("used_at", models.DateTimeField()),
                ("notes", models.TextField(blank=True)),
                ("checkin", models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name="package_usages", to="members.checkin")),
                ("created_by", models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name="package_usages_created", to=settings.AUTH_USER_MODEL)),
                ("member", models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, related_name="package_usages", to="members.member")),
                ("member_package", models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, related_name="usages", to="packs.memberpackage")),
            ],
            options={
                "ordering": ["used_at", "id"],
            },
        ),
        migrations.CreateModel(
            name="CheckInIdempotencyRecord",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("idempotency_key", models.CharField(max_length=128, unique=True)),
                ("response", models.JSONField()),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("checkin", models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name="+", to="members.checkin")),
                ("member", models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, related_name="+", to="members.member")),
                ("member_package", models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, related_name="idempotency_records", to="packs.memberpackage")),
            ],
        ),
    ]
