from django.conf import settings
from django.db import models


class TimeStampedModel(models.Model):
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        abstract = True


class AuditAction(models.TextChoices):
    OPEN_SHIFT = "OPEN_SHIFT", "Open Shift"
    CLOSE_SHIFT = "CLOSE_SHIFT", "Close Shift"
    CREATE_PAYMENT = "CREATE_PAYMENT", "Create Payment"
    COLLECT_BALANCE = "COLLECT_BALANCE", "Collect Balance"
    REFUND_PAYMENT = "REFUND_PAYMENT", "Refund Payment"
    CREATE_SUBSCRIPTION = "CREATE_SUBSCRIPTION", "Create Subscription"
    RENEW_SUBSCRIPTION = "RENEW_SUBSCRIPTION", "Renew Subscription"
    PAUSE_SUBSCRIPTION = "PAUSE_SUBSCRIPTION", "Pause Subscription"
    RESUME_SUBSCRIPTION = "RESUME_SUBSCRIPTION", "Resume Subscription"
    FREEZE_SUBSCRIPTION = "FREEZE_SUBSCRIPTION", "Freeze Subscription"
    UNFREEZE_SUBSCRIPTION = "UNFREEZE_SUBSCRIPTION", "Unfreeze Subscription"
    CANCEL_SUBSCRIPTION = "CANCEL_SUBSCRIPTION", "Cancel Subscription"
    ASSIGN_PACKAGE = "ASSIGN_PACKAGE", "Assign Package"
    PACKAGE_STATUS = "PACKAGE_STATUS", "Package Status Change"
    PACKAGE_CHECKIN = "PACKAGE_CHECKIN", "Package Check-in"


class AuditLog(TimeStampedModel):
    action = models.CharField(max_length=40, choices=AuditAction.choices)
    user = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="audit_logs",
    )
    entity_type = models.CharField(max_length=40)
    entity_id = models.PositiveBigIntegerField(null=True, blank=True)
    metadata = models.JSONField(default=dict, blank=True)

    class Meta:
        indexes = [models.Index(fields=["entity_type", "entity_id"], name="core_auditl_entity__2f9c1e_idx")]

    def __str__(self) -> str:
        return f"{self.action} {self.entity_type}#{self.entity_id} ({self.created_at})"


def log_audit(action, ctx, entity, metadata=None) -> AuditLog:
    return AuditLog.objects.create(
        action=action,
        user=ctx.actor if ctx.actor_id else None,
        entity_type=type(entity).__name__,
        entity_id=entity.pk,
        metadata=metadata or {},
    )
