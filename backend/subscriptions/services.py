import logging
from datetime import date, datetime, time, timedelta

from django.db import IntegrityError, transaction
from django.db.models import Q, Sum
from django.utils import timezone

from core.conf import ledger_setting
from core.context import OperationContext
from core.exceptions import Conflict, InvalidInput, NotFound
from core.models import AuditAction, log_audit
from core.money import ZERO, ceil_days, clamp_money, round_money
from members.models import Member, Plan, PlanType
from pos.models import Payment, PaymentStatus, Refund
from pos.services import collect_balance, open_shift_for_user, record_refund, split_settlement
from receipts.services import emit_subscription_receipt

from .models import (
    CancelSource,
    CancelType,
    PaymentState,
    Subscription,
    SubscriptionStatus,
    TERMINAL_STATUSES,
)

logger = logging.getLogger(__name__)


def _get_subscription(subscription_id, lock: bool = False) -> Subscription:
    queryset = Subscription.objects.select_related("member", "plan")
    if lock:
        queryset = queryset.select_for_update()
    subscription = queryset.filter(pk=subscription_id).first()
    if subscription is None:
        raise NotFound("Subscription not found.")
    return subscription


def _get_member(member_id) -> Member:
    member = Member.objects.filter(pk=member_id).first()
    if member is None:
        raise NotFound("Member not found.")
    if not member.is_active:
        raise InvalidInput({"member_id": ["Member is not active."]}, reason="MEMBER_INACTIVE")
    return member


def _get_subscription_plan(plan_id) -> Plan:
    plan = Plan.objects.filter(pk=plan_id).first()
    if plan is None:
        raise NotFound("Subscription plan not found.")
    if not plan.is_active or plan.plan_type != PlanType.SUBSCRIPTION or not plan.duration_days:
        raise InvalidInput({"plan_id": ["Plan is inactive or not a subscription plan."]}, reason="PLAN_UNAVAILABLE")
    return plan


def _as_datetime(value, default: datetime) -> datetime:
    if value in (None, ""):
        return default
    if isinstance(value, datetime):
        return value if timezone.is_aware(value) else timezone.make_aware(value)
    if isinstance(value, date):
        return timezone.make_aware(datetime.combine(value, time.min))
    raise InvalidInput({"start_date": ["Invalid start date."]})


def _resolve_paid_amount(paid_amount, payment_status, total):
    if paid_amount in (None, ""):
        return total if str(payment_status or "").lower() == PaymentState.PAID else ZERO
    paid = round_money(paid_amount)
    if paid < ZERO:
        raise InvalidInput({"paid_amount": ["Paid amount cannot be negative."]})
    return paid


def _keyed_subscription(idempotency_key, member_id) -> Subscription | None:
    subscription = Subscription.objects.filter(idempotency_key=idempotency_key).first()
    if subscription is not None and str(subscription.member_id) != str(member_id):
        logger.warning("Idempotency key %s reused for member %s", idempotency_key, member_id)
        raise Conflict("This idempotency key belongs to another member.", reason="IDEMPOTENCY_KEY_REUSED")
    return subscription


def _find_replay(member, plan, price, ctx: OperationContext, idempotency_key=None) -> Subscription | None:
    if idempotency_key:
        return _keyed_subscription(idempotency_key, member.pk)
    window = int(ledger_setting("DUPLICATE_SUBMISSION_WINDOW_SECONDS"))
    return (
        Subscription.objects.filter(
            member=member,
            plan=plan,
            price=price,
            status=SubscriptionStatus.ACTIVE,
            created_by_id=ctx.actor_id,
            created_at__gte=timezone.now() - timedelta(seconds=window),
        )
        .order_by("-created_at")
        .first()
    )


def _replay(subscription: Subscription) -> dict:
    logger.info("Replaying subscription %s for member %s", subscription.pk, subscription.member_id)
    receipt = subscription.member.receipts.filter(transaction_key=f"SUBSCRIPTION-{subscription.pk}").first()
    return {
        "subscription": subscription,
        "payments": list(subscription.payments.order_by("id")),
        "receipt": receipt,
        "replay": True,
    }


def _open_cycle(
    member,
    plan,
    ctx: OperationContext,
    *,
    start,
    price,
    discount,
    paid,
    method,
    external_reference,
    notes,
    idempotency_key,
    previous=None,
) -> dict:
    try:
        with transaction.atomic():
            subscription = Subscription.objects.create(
                member=member,
                plan=plan,
                previous_subscription=previous,
                start_date=start,
                end_date=start + timedelta(days=plan.duration_days),
                price=price,
                discount=discount,
                notes=notes or "",
                idempotency_key=idempotency_key or None,
                created_by=ctx.actor if ctx.actor_id else None,
            )
    except IntegrityError:
        existing = _find_replay(member, plan, price, ctx, idempotency_key)
        if existing is not None:
            return _replay(existing)
        logger.warning("Concurrent subscription write for member %s", member.pk)
        raise Conflict("Member already has an active subscription.", reason="ACTIVE_SUBSCRIPTION_EXISTS")

    payments = split_settlement(
        member,
        subscription.total_price,
        paid,
        method,
        ctx,
        subscription=subscription,
        external_reference=external_reference,
        notes=f"Subscription {plan.name}",
    )
    subscription.refresh_payment_totals()
    completed = next((p for p in payments if p.status == PaymentStatus.COMPLETED), None)
    receipt, _ = emit_subscription_receipt(subscription, ctx, completed)
    return {"subscription": subscription, "payments": payments, "receipt": receipt, "replay": False}


@transaction.atomic
def create_subscription(
    member_id,
    plan_id,
    ctx: OperationContext,
    start_date=None,
    price=None,
    discount=None,
    paid_amount=None,
    payment_status=None,
    method="cash",
    external_reference=None,
    notes: str = "",
    idempotency_key=None,
) -> dict:
    if idempotency_key:
        existing = _keyed_subscription(idempotency_key, member_id)
        if existing is not None:
            return _replay(existing)

    member = _get_member(member_id)
    plan = _get_subscription_plan(plan_id)

    price = round_money(plan.price if price in (None, "") else price)
    discount = round_money(discount or ZERO)
    if price < ZERO:
        raise InvalidInput({"price": ["Price cannot be negative."]})
    if discount < ZERO:
        raise InvalidInput({"discount": ["Discount cannot be negative."]})
    if discount > price:
        raise InvalidInput({"discount": ["Discount cannot exceed the price."]}, reason="DISCOUNT_EXCEEDS_PRICE")
    total = clamp_money(price - discount)
    paid = _resolve_paid_amount(paid_amount, payment_status, total)

    if not idempotency_key:
        recent = _find_replay(member, plan, price, ctx)
        if recent is not None:
            return _replay(recent)

    if Subscription.objects.filter(member=member, status=SubscriptionStatus.ACTIVE).exists():
        logger.warning("Member %s already has an active subscription", member.pk)
        raise Conflict("Member already has an active subscription.", reason="ACTIVE_SUBSCRIPTION_EXISTS")

    result = _open_cycle(
        member,
        plan,
        ctx,
        start=_as_datetime(start_date, ctx.now),
        price=price,
        discount=discount,
        paid=paid,
        method=method,
        external_reference=external_reference,
        notes=notes,
        idempotency_key=idempotency_key,
    )
    if not result["replay"]:
        subscription = result["subscription"]
        log_audit(
            AuditAction.CREATE_SUBSCRIPTION,
            ctx,
            subscription,
            {"plan": plan.name, "price": str(price), "discount": str(discount), "paid": str(paid)},
        )
        logger.info(
            "Subscription %s created for member %s: total=%s paid=%s (%s)",
            subscription.pk,
            member.pk,
            subscription.total_price,
            subscription.paid_amount,
            subscription.payment_status,
        )
    return result


@transaction.atomic
def renew_subscription(
    previous_subscription_id,
    plan_id,
    ctx: OperationContext,
    paid_amount=None,
    payment_status=None,
    method="cash",
    external_reference=None,
    notes: str = "",
    idempotency_key=None,
) -> dict:
    """Start a fresh cycle from now, expiring whatever is still active."""
    previous = _get_subscription(previous_subscription_id)
    member = previous.member
    if idempotency_key:
        existing = _keyed_subscription(idempotency_key, member.pk)
        if existing is not None:
            return _replay(existing)

    plan = _get_subscription_plan(plan_id)
    price = round_money(plan.price)
    paid = _resolve_paid_amount(paid_amount, payment_status, price)

    if not idempotency_key:
        recent = _find_replay(member, plan, price, ctx)
        if recent is not None and recent.pk != previous.pk:
            return _replay(recent)

    expired = 0
    for active in Subscription.objects.select_for_update().filter(member=member, status=SubscriptionStatus.ACTIVE):
        active.expire()
        expired += 1

    result = _open_cycle(
        member,
        plan,
        ctx,
        start=ctx.now,
        price=price,
        discount=ZERO,
        paid=paid,
        method=method,
        external_reference=external_reference,
        notes=notes or f"Renewal of subscription #{previous.pk}",
        idempotency_key=idempotency_key,
        previous=previous,
    )
    if not result["replay"]:
        subscription = result["subscription"]
        log_audit(
            AuditAction.RENEW_SUBSCRIPTION,
            ctx,
            subscription,
            {"previous_id": previous.pk, "plan": plan.name, "expired": expired, "paid": str(paid)},
        )
        logger.info(
            "Subscription %s renewed as %s for member %s (%s expired)",
            previous.pk,
            subscription.pk,
            member.pk,
            expired,
        )
    return result


@transaction.atomic
def toggle_pause(subscription_id, ctx: OperationContext, reason: str = "") -> Subscription:
    subscription = _get_subscription(subscription_id, lock=True)
    if subscription.status == SubscriptionStatus.ACTIVE:
        subscription.pause(ctx, reason)
        log_audit(AuditAction.PAUSE_SUBSCRIPTION, ctx, subscription, {"reason": reason or ""})
        logger.info("Subscription %s paused", subscription.pk)
    elif subscription.status == SubscriptionStatus.PAUSED:
        other_active = Subscription.objects.filter(
            member_id=subscription.member_id,
            status=SubscriptionStatus.ACTIVE,
        ).exclude(pk=subscription.pk)
        if other_active.exists():
            raise Conflict("Member already has another active subscription.", reason="ACTIVE_SUBSCRIPTION_EXISTS")
        interval = subscription.resume(ctx)
        log_audit(
            AuditAction.RESUME_SUBSCRIPTION,
            ctx,
            subscription,
            {"extended_days": interval.duration_days, "end_date": subscription.end_date.isoformat()},
        )
        logger.info("Subscription %s resumed, extended by %s days", subscription.pk, interval.duration_days)
    else:
        raise Conflict(
            f"Only active or paused subscriptions can be paused or resumed (status is {subscription.status}).",
            reason="INVALID_TRANSITION",
        )
    return subscription


@transaction.atomic
def freeze_subscription(subscription_id, days, ctx: OperationContext) -> Subscription:
    max_days = int(ledger_setting("MAX_FREEZE_DAYS"))
    try:
        days = int(days)
    except (TypeError, ValueError):
        raise InvalidInput({"days": ["Freeze days must be a whole number."]})
    if not 1 <= days <= max_days:
        raise InvalidInput({"days": [f"Freeze days must be between 1 and {max_days}."]})

    subscription = _get_subscription(subscription_id, lock=True)
    subscription.freeze(ctx, days)
    log_audit(
        AuditAction.FREEZE_SUBSCRIPTION,
        ctx,
        subscription,
        {"days": days, "frozen_until": subscription.frozen_until.isoformat()},
    )
    logger.info("Subscription %s frozen for %s days", subscription.pk, days)
    return subscription


@transaction.atomic
def unfreeze_subscription(subscription_id, ctx: OperationContext) -> Subscription:
    subscription = _get_subscription(subscription_id, lock=True)
    subscription.unfreeze(ctx)
    log_audit(AuditAction.UNFREEZE_SUBSCRIPTION, ctx, subscription)
    logger.info("Subscription %s unfrozen", subscription.pk)
    return subscription


@transaction.atomic
def collect_subscription_balance(subscription_id, amount, method, ctx: OperationContext, external_reference=None):
    subscription = _get_subscription(subscription_id, lock=True)
    if subscription.is_terminal:
        raise Conflict("Cannot collect on a closed subscription.", reason="INVALID_TRANSITION")
    payment = collect_balance(subscription, amount, method, ctx, external_reference=external_reference)
    subscription.refresh_from_db()
    return subscription, payment


def _alert_filter(now) -> Q:
    return Q(status__in=TERMINAL_STATUSES) | Q(status=SubscriptionStatus.ACTIVE, end_date__lte=now)


def acknowledge_alert(subscription_id, ctx: OperationContext, acknowledged: bool = True) -> Subscription:
    subscription = _get_subscription(subscription_id)
    subscription.alert_acknowledged = bool(acknowledged)
    subscription.alert_acknowledged_at = ctx.now if acknowledged else None
    subscription.alert_acknowledged_by = ctx.actor if acknowledged and ctx.actor_id else None
    subscription.save(
        update_fields=["alert_acknowledged", "alert_acknowledged_at", "alert_acknowledged_by", "updated_at"]
    )
    return subscription


def acknowledge_all_alerts(ctx: OperationContext) -> int:
    return Subscription.objects.filter(_alert_filter(ctx.now), alert_acknowledged=False).update(
        alert_acknowledged=True,
        alert_acknowledged_at=ctx.now,
        alert_acknowledged_by=ctx.actor if ctx.actor_id else None,
        updated_at=timezone.now(),
    )


def expired_alerts(now, unacknowledged_only: bool = False):
    queryset = Subscription.objects.filter(_alert_filter(now)).select_related("member", "plan")
    if unacknowledged_only:
        queryset = queryset.filter(alert_acknowledged=False)
    return queryset.order_by("-end_date")


def expiring_soon(now, days: int = 7):
    return (
        Subscription.objects.filter(
            status=SubscriptionStatus.ACTIVE,
            end_date__gte=now,
            end_date__lte=now + timedelta(days=days),
        )
        .select_related("member", "plan")
        .order_by("end_date")
    )


def expire_due_subscriptions(now) -> int:
    """Move active subscriptions whose end date has passed to expired."""
    count = Subscription.objects.filter(status=SubscriptionStatus.ACTIVE, end_date__lte=now).update(
        status=SubscriptionStatus.EXPIRED,
        updated_at=timezone.now(),
    )
    if count:
        logger.info("Expired %s subscriptions past their end date", count)
    return count


def preview_cancel(subscription_id, ctx: OperationContext) -> dict:
    """Proration for cancelling at ``ctx.now``. Nothing is written."""
    subscription = (
        subscription_id
        if isinstance(subscription_id, Subscription)
        else _get_subscription(subscription_id)
    )
    paid_total = round_money(subscription.paid_amount)
    refunded_total = round_money(
        Refund.objects.filter(payment__subscription=subscription).aggregate(total=Sum("amount"))["total"] or ZERO
    )
    duration = subscription.plan.duration_days or 0
    used_days = min(ceil_days(ctx.now - subscription.start_date), duration)
    if duration:
        used_amount = round_money(subscription.price * used_days / duration)
    else:
        used_amount = ZERO
    used_amount = min(used_amount, paid_total)
    refundable = clamp_money(paid_total - refunded_total - used_amount)
    return {
        "paid_total": paid_total,
        "refunded_total": refunded_total,
        "used_days": used_days,
        "total_duration": duration,
        "used_amount": used_amount,
        "refundable_amount": refundable,
        "net_retained": used_amount,
    }


def _refund_latest_payments(subscription, amount, ctx: OperationContext, reason: str) -> None:
    remaining = amount
    payments = (
        Payment.objects.filter(
            subscription=subscription,
            status__in=(PaymentStatus.COMPLETED, PaymentStatus.PARTIAL_REFUND),
        )
        .order_by("-paid_at", "-id")
    )
    for payment in payments:
        if remaining <= ZERO:
            break
        share = min(remaining, payment.amount - payment.refunded_total)
        if share <= ZERO:
            continue
        record_refund(payment, share, ctx, reason=reason)
        remaining = round_money(remaining - share)
    if remaining > ZERO:
        raise Conflict("No payment is left to carry the refund.", reason="NO_REFUNDABLE_PAYMENT")


@transaction.atomic
def cancel_subscription(subscription_id, ctx: OperationContext, cancel_type=CancelType.PRORATED, reason: str = "") -> dict:
    subscription = _get_subscription(subscription_id, lock=True)
    if subscription.status != SubscriptionStatus.ACTIVE:
        raise Conflict("Only active subscriptions can be cancelled.", reason="INVALID_TRANSITION")
    cancel_type = str(cancel_type or CancelType.PRORATED).lower()
    if cancel_type not in CancelType.values:
        raise InvalidInput({"type": ["Cancellation type must be prorated or immediate."]})

    preview = preview_cancel(subscription, ctx)
    refund_amount = preview["refundable_amount"] if cancel_type == CancelType.PRORATED else ZERO

    if refund_amount > ZERO and ctx.shift is None:
        ctx = ctx.with_shift(open_shift_for_user(ctx.actor))
        if ctx.shift is None:
            raise InvalidInput(
                {"shift": ["An open shift is required to refund the cancellation."]},
                reason="SHIFT_REQUIRED",
            )

    default_reason = "Prorated cancellation" if cancel_type == CancelType.PRORATED else "Immediate cancellation"
    subscription.cancel(
        ctx,
        reason=reason or default_reason,
        source=CancelSource.MANUAL,
        used_amount=preview["used_amount"],
    )
    if refund_amount > ZERO:
        _refund_latest_payments(
            subscription,
            refund_amount,
            ctx,
            reason=f"Prorated cancellation ({preview['used_days']} days used)",
        )

    log_audit(
        AuditAction.CANCEL_SUBSCRIPTION,
        ctx,
        subscription,
        {
            "type": cancel_type,
            "used_days": preview["used_days"],
            "used_amount": str(preview["used_amount"]),
            "refunded": str(refund_amount),
        },
    )
    logger.info(
        "Subscription %s cancelled (%s): used %s days worth %s, refunded %s",
        subscription.pk,
        cancel_type,
        preview["used_days"],
        preview["used_amount"],
        refund_amount,
    )
    subscription.refresh_from_db()
    return {"subscription": subscription, "refund_amount": refund_amount, "preview": preview}
