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
            name="ReceiptCounter",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("day", models.DateField(unique=True)),
                ("last_number", models.PositiveIntegerField(default=0)),
            ],
        ),
        migrations.CreateModel(
            name="Receipt",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                ("receipt_no", models.CharField(max_length=32, unique=True)),
                ("transaction_key", models.CharField(max_length=64, unique=True)),
                ("transaction_type", models.CharField(choices=[("payment", "Payment"), ("subscription", "Subscription")], max_length=20)),
                ("payment_method", models.CharField(blank=True, max_length=20)),
                ("customer_name", models.CharField(blank=True, max_length=255)),
                ("customer_phone", models.CharField(blank=True, max_length=20)),
                ("customer_code", models.CharField(blank=True, max_length=30)),
                ("staff_name", models.CharField(blank=True, max_length=255)),
                ("items", models.JSONField(default=list)),
                ("totals", models.JSONField(default=dict)),
                ("status", models.CharField(choices=[("issued", "Issued")], default="issued", max_length=20)),
                ("notes", models.TextField(blank=True)),
                ("issued_at", models.DateTimeField()),
                ("member", models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name="receipts", to="members.member")),
                ("staff", models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name="receipts_issued", to=settings.AUTH_USER_MODEL)),
            ],
            options={
                "ordering": ["-issued_at", "-id"],
                "indexes": [
                    models.Index(fields=["transaction_type", "issued_at"], name="receipt_type_issued_idx"),
                    models.Index(fields=["customer_name", "customer_phone"], name="receipt_customer_idx"),
                ],
            },
        ),
    ]
