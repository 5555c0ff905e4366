from decimal import Decimal

from django.db import migrations, models
import django.db.models.deletion


class Migration(migrations.Migration):
    initial = True

    dependencies = []

    operations = [
        migrations.CreateModel(
            name="Member",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                ("first_name", models.CharField(max_length=120)),
                ("last_name", models.CharField(blank=True, max_length=120)),
                ("phone", models.CharField(max_length=20, unique=True)),
                ("member_code", models.CharField(max_length=30, unique=True)),
                ("is_active", models.BooleanField(default=True)),
            ],
            options={
                "abstract": False,
            },
        ),
        migrations.CreateModel(
            name="Plan",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                ("name", models.CharField(max_length=120)),
                ("plan_type", models.CharField(choices=[("SUBSCRIPTION", "Subscription"), ("PACKAGE", "Session Package")], default="SUBSCRIPTION", max_length=20)),
                ("price", models.DecimalField(decimal_places=2, default=Decimal("0.00"), max_digits=12)),
                ("duration_days", models.PositiveIntegerField(blank=True, null=True)),
                ("total_sessions", models.PositiveIntegerField(blank=True, null=True)),
                ("validity_days", models.PositiveIntegerField(blank=True, null=True)),
                ("is_active", models.BooleanField(default=True)),
            ],
            options={
                "constraints": [
                    models.CheckConstraint(condition=models.Q(("plan_type", "PACKAGE"), ("duration_days__gt", 0), _connector="OR"), name="subscription_plan_has_duration"),
                ],
            },
        ),
        migrations.CreateModel(
            name="CheckIn",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                ("method", models.CharField(default="manual", max_length=20)),
                ("notes", models.JSONField(blank=True, default=dict)),
                ("member", models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name="checkins", to="members.member")),
            ],
            options={
                "abstract": False,
            },
        ),
    ]
