import logging
from datetime import date, datetime, time, timedelta

from django.db import IntegrityError, transaction
from django.utils import timezone

from core.context import OperationContext
from core.exceptions import Conflict, InvalidInput, NotFound
from core.models import AuditAction, log_audit
from core.money import ZERO, round_money
from members.models import CheckIn, Member, Plan, PlanType
from pos.services import normalize_method
from subscriptions.models import PaymentState

from .models import (
    CheckInIdempotencyRecord,
    MemberPackage,
    PackageSessionUsage,
    PackageStatus,
    UsageSource,
)

logger = logging.getLogger(__name__)

MANUAL_STATUSES = (PackageStatus.ACTIVE, PackageStatus.PAUSED)


def sync_statuses(now=None, **filters) -> int:
    """Close out active packages that ran out of sessions or passed their end date."""
    now = now or timezone.now()
    active = MemberPackage.objects.filter(status=PackageStatus.ACTIVE, **filters)
    completed = active.filter(remaining_sessions__lte=0).update(
        status=PackageStatus.COMPLETED,
        updated_at=timezone.now(),
    )
    expired = (
        MemberPackage.objects.filter(status=PackageStatus.ACTIVE, end_date__lt=now, **filters)
        .update(status=PackageStatus.EXPIRED, updated_at=timezone.now())
    )
    if completed or expired:
        logger.info("Package sync: %s completed, %s expired", completed, expired)
    return completed + expired


def _as_datetime(value, default):
    if value in (None, ""):
        return default
    if isinstance(value, datetime):
        return value if timezone.is_aware(value) else timezone.make_aware(value)
    if isinstance(value, date):
        return timezone.make_aware(datetime.combine(value, time.min))
    raise InvalidInput({"start_date": ["Invalid start date."]})


def _money_or_none(value):
    return None if value is None else str(round_money(value))


def assignment_payload(assignment: MemberPackage) -> dict:
    """JSON-safe view of an assignment, as stored for check-in replays."""
    member = assignment.member
    return {
        "id": assignment.pk,
        "member": {
            "id": member.pk,
            "member_code": member.member_code,
            "first_name": member.first_name,
            "last_name": member.last_name,
        },
        "plan": {"id": assignment.plan_id, "name": assignment.plan.name},
        "start_date": assignment.start_date.isoformat(),
        "end_date": assignment.end_date.isoformat() if assignment.end_date else None,
        "total_sessions": assignment.total_sessions,
        "remaining_sessions": assignment.remaining_sessions,
        "used_sessions": assignment.used_sessions,
        "session_name": assignment.session_name,
        "session_price": _money_or_none(assignment.session_price),
        "status": assignment.status,
        "payment_method": assignment.payment_method,
        "payment_status": assignment.payment_status,
        "amount_paid": _money_or_none(assignment.amount_paid),
    }


@transaction.atomic
def assign_package(
    member_id,
    plan_id,
    ctx: OperationContext,
    start_date=None,
    session_name=None,
    session_price=None,
    payment_method=None,
    payment_status=PaymentState.UNPAID,
    amount_paid=None,
) -> MemberPackage:
    plan = Plan.objects.filter(pk=plan_id).first()
    if plan is None or not plan.is_active or plan.plan_type != PlanType.PACKAGE:
        raise InvalidInput({"plan_id": ["Package plan not found or inactive."]}, reason="PLAN_UNAVAILABLE")
    member = Member.objects.filter(pk=member_id).first()
    if member is None:
        raise NotFound("Member not found.")
    total_sessions = plan.total_sessions or 0
    if total_sessions <= 0:
        raise InvalidInput({"plan_id": ["Package plan has no sessions."]}, reason="PLAN_UNAVAILABLE")

    if payment_method:
        payment_method = normalize_method(payment_method)
    payment_status = str(payment_status or PaymentState.UNPAID).lower()
    if payment_status not in PaymentState.values:
        raise InvalidInput({"payment_status": ["Payment status must be paid, partial or unpaid."]})
    if amount_paid in (None, ""):
        amount_paid = plan.price if payment_status == PaymentState.PAID else ZERO
    amount_paid = round_money(amount_paid)
    if amount_paid < ZERO:
        raise InvalidInput({"amount_paid": ["Amount paid cannot be negative."]})

    sync_statuses(ctx.now, member=member)
    if MemberPackage.objects.filter(member=member, status=PackageStatus.ACTIVE).exists():
        logger.warning("Member %s already has an active package", member.pk)
        raise Conflict("Member already has an active session package.", reason="ACTIVE_PACKAGE_EXISTS")

    start = _as_datetime(start_date, ctx.now)
    if session_price in (None, ""):
        session_price = round_money(plan.price / total_sessions) if plan.price > ZERO else ZERO
    else:
        session_price = round_money(session_price)
        if session_price < ZERO:
            raise InvalidInput({"session_price": ["Session price cannot be negative."]})

    try:
        with transaction.atomic():
            assignment = MemberPackage.objects.create(
                member=member,
                plan=plan,
                start_date=start,
                end_date=start + timedelta(days=plan.validity_days) if plan.validity_days else None,
                total_sessions=total_sessions,
                remaining_sessions=total_sessions,
                session_name=(session_name or "").strip() or plan.name,
                session_price=session_price,
                payment_method=payment_method or None,
                payment_status=payment_status,
                amount_paid=amount_paid,
                created_by=ctx.actor if ctx.actor_id else None,
            )
    except IntegrityError:
        logger.warning("Concurrent package assignment for member %s", member.pk)
        raise Conflict("Member already has an active session package.", reason="ACTIVE_PACKAGE_EXISTS")

    log_audit(
        AuditAction.ASSIGN_PACKAGE,
        ctx,
        assignment,
        {"plan": plan.name, "total_sessions": total_sessions, "amount_paid": str(amount_paid)},
    )
    logger.info("Package %s assigned to member %s (%s sessions)", assignment.pk, member.pk, total_sessions)
    return assignment


def _stored_response(idempotency_key):
    record = CheckInIdempotencyRecord.objects.filter(idempotency_key=idempotency_key).first()
    return record.response if record is not None else None


def _consume_session(assignment_id, ctx: OperationContext, idempotency_key, session_name, session_price) -> dict:
    assignment = (
        MemberPackage.objects.select_for_update()
        .select_related("member", "plan")
        .filter(pk=assignment_id, plan__plan_type=PlanType.PACKAGE)
        .first()
    )
    if assignment is None:
        raise NotFound("Package assignment not found.")
    if assignment.status == PackageStatus.PAUSED:
        raise Conflict("Package is paused.", reason="PACKAGE_PAUSED")
    if assignment.status == PackageStatus.EXPIRED:
        raise Conflict("Package is expired.", reason="PACKAGE_EXPIRED")
    if assignment.status == PackageStatus.COMPLETED or assignment.remaining_sessions <= 0:
        raise Conflict("Package has no sessions left.", reason="PACKAGE_EXHAUSTED")

    used_name = (session_name or "").strip() or assignment.session_name or assignment.plan.name
    used_price = assignment.session_price if session_price in (None, "") else round_money(session_price)

    checkin = CheckIn.objects.create(
        member=assignment.member,
        method="manual",
        notes={"visit_type": "PACKAGE", "assignment_id": assignment.pk},
    )
    usage = PackageSessionUsage.objects.create(
        member=assignment.member,
        member_package=assignment,
        checkin=checkin,
        session_name=used_name,
        session_price=used_price,
        source=UsageSource.CHECKIN,
        used_at=ctx.now,
        created_by=ctx.actor if ctx.actor_id else None,
    )

    assignment.remaining_sessions -= 1
    if assignment.remaining_sessions <= 0:
        assignment.status = PackageStatus.COMPLETED
    assignment.session_name = used_name
    assignment.session_price = used_price
    assignment.save(update_fields=["remaining_sessions", "status", "session_name", "session_price", "updated_at"])

    payload = {
        "assignment": assignment_payload(assignment),
        "checkin": {
            "id": usage.pk,
            "checkin_id": checkin.pk,
            "member_id": assignment.member_id,
            "assignment_id": assignment.pk,
            "session_name": usage.session_name,
            "session_price": _money_or_none(usage.session_price),
            "checked_in_at": usage.used_at.isoformat(),
        },
    }
    if idempotency_key:
        CheckInIdempotencyRecord.objects.create(
            idempotency_key=idempotency_key,
            member=assignment.member,
            member_package=assignment,
            checkin=checkin,
            response=payload,
        )
    log_audit(
        AuditAction.PACKAGE_CHECKIN,
        ctx,
        assignment,
        {"usage_id": usage.pk, "remaining_sessions": assignment.remaining_sessions},
    )
    logger.info(
        "Package %s check-in for member %s, %s sessions left",
        assignment.pk,
        assignment.member_id,
        assignment.remaining_sessions,
    )
    return payload


def check_in_package(
    assignment_id,
    ctx: OperationContext,
    idempotency_key=None,
    session_name=None,
    session_price=None,
) -> tuple[dict, bool]:
    """Consume one session. Returns ``(payload, replay)``.

    A key that was already used returns the stored payload without touching
    the package again.
    """
    idempotency_key = (idempotency_key or "").strip() or None
    if idempotency_key:
        stored = _stored_response(idempotency_key)
        if stored is not None:
            logger.info("Replaying check-in for key %s", idempotency_key)
            return stored, True

    sync_statuses(ctx.now, pk=assignment_id)
    try:
        with transaction.atomic():
            payload = _consume_session(assignment_id, ctx, idempotency_key, session_name, session_price)
    except IntegrityError:
        if idempotency_key:
            stored = _stored_response(idempotency_key)
            if stored is not None:
                logger.info("Check-in race on key %s resolved by replay", idempotency_key)
                return stored, True
        raise
    return payload, False


@transaction.atomic
def set_package_status(assignment_id, status, ctx: OperationContext) -> MemberPackage:
    status = str(status or "").upper()
    if status not in MANUAL_STATUSES:
        raise InvalidInput({"status": ["Status can only be switched between ACTIVE and PAUSED."]})
    sync_statuses(ctx.now, pk=assignment_id)
    assignment = MemberPackage.objects.select_for_update().filter(pk=assignment_id).first()
    if assignment is None:
        raise NotFound("Package assignment not found.")
    if assignment.status not in MANUAL_STATUSES:
        raise Conflict(f"A {assignment.status} package cannot change status.", reason="INVALID_TRANSITION")
    if assignment.status == status:
        return assignment
    if status == PackageStatus.ACTIVE:
        others = MemberPackage.objects.filter(member_id=assignment.member_id, status=PackageStatus.ACTIVE)
        if others.exclude(pk=assignment.pk).exists():
            raise Conflict("Member already has an active session package.", reason="ACTIVE_PACKAGE_EXISTS")

    previous = assignment.status
    assignment.status = status
    assignment.save(update_fields=["status", "updated_at"])
    log_audit(AuditAction.PACKAGE_STATUS, ctx, assignment, {"from": previous, "to": status})
    logger.info("Package %s switched from %s to %s", assignment.pk, previous, status)
    return assignment


def package_usages(assignment_id):
    if not MemberPackage.objects.filter(pk=assignment_id).exists():
        raise NotFound("Package assignment not found.")
    return PackageSessionUsage.objects.filter(member_package_id=assignment_id).select_related("created_by")
