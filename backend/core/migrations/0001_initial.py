from django.conf import settings
from django.db import migrations, models
import django.db.models.deletion


class Migration(migrations.Migration):
    initial = True

    dependencies = [
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name="AuditLog",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                ("action", models.CharField(choices=[("OPEN_SHIFT", "Open Shift"), ("CLOSE_SHIFT", "Close Shift"), ("CREATE_PAYMENT", "Create Payment"), ("COLLECT_BALANCE", "Collect Balance"), ("REFUND_PAYMENT", "Refund Payment"), ("CREATE_SUBSCRIPTION", "Create Subscription"), ("RENEW_SUBSCRIPTION", "Renew Subscription"), ("PAUSE_SUBSCRIPTION", "Pause Subscription"), ("RESUME_SUBSCRIPTION", "Resume Subscription"), ("FREEZE_SUBSCRIPTION", "Freeze Subscription"), ("UNFREEZE_SUBSCRIPTION", "Unfreeze Subscription"), ("CANCEL_SUBSCRIPTION", "Cancel Subscription"), ("ASSIGN_PACKAGE", "Assign Package"), ("PACKAGE_STATUS", "Package Status Change"), ("PACKAGE_CHECKIN", "Package Check-in")], max_length=40)),
                ("entity_type", models.CharField(max_length=40)),
                ("entity_id", models.PositiveBigIntegerField(blank=True, null=True)),
                ("metadata", models.JSONField(blank=True, default=dict)),
                ("user", models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name="audit_logs", to=settings.AUTH_USER_MODEL)),
            ],
            options={
                "indexes": [models.Index(fields=["entity_type", "entity_id"], name="core_auditl_entity__2f9c1e_idx")],
            },
        ),
    ]
