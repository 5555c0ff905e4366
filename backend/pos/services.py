import logging
import secrets
from decimal import Decimal

from django.contrib.auth import get_user_model
from django.db import IntegrityError, transaction
from django.db.models import Count, F, Q, Sum
from rest_framework.exceptions import PermissionDenied

from core.conf import ledger_setting
from core.context import OperationContext
from core.exceptions import Conflict, InvalidInput, NotFound
from core.models import AuditAction, log_audit
from core.money import ZERO, clamp_money, round_money, tolerance
from members.models import Member
from receipts.services import emit_payment_receipt

from .models import (
    COLLECTED_STATUSES,
    NO_ACTIVITY_NOTE,
    MachineStatus,
    Payment,
    PaymentMethod,
    PaymentStatus,
    POSMachine,
    Refund,
    Shift,
    ShiftActivity,
    ShiftStatus,
)

logger = logging.getLogger(__name__)

RECEIPT_NUMBER_ATTEMPTS = 5


# ---------------------------------------------------------------------------
# Shift ledger
# ---------------------------------------------------------------------------


def register_machine(machine_key: str, name: str | None = None) -> POSMachine:
    machine_key = (machine_key or "").strip()
    if not machine_key:
        raise InvalidInput({"machine_key": ["This field is required."]})
    machine, created = POSMachine.objects.get_or_create(
        machine_key=machine_key,
        defaults={"name": (name or "").strip() or "Counter POS"},
    )
    if created:
        logger.info("Registered POS machine %s (%s)", machine.pk, machine_key)
    return machine


def machine_status(machine_id) -> dict:
    machine = POSMachine.objects.filter(pk=machine_id).first()
    if machine is None:
        raise NotFound("POS machine not found.")
    open_shift = (
        Shift.objects.filter(machine=machine, status=ShiftStatus.OPEN).select_related("opened_by").first()
    )
    return {"machine": machine, "open_shift": open_shift}


def open_shift_for_user(user) -> Shift | None:
    if user is None or not getattr(user, "is_authenticated", False):
        return None
    return Shift.objects.filter(opened_by=user, status=ShiftStatus.OPEN).select_related("machine").first()


def _get_active_user(user_id):
    user = get_user_model().objects.filter(pk=user_id, is_active=True).first()
    if user is None:
        raise NotFound("User not found.")
    return user


@transaction.atomic
def open_shift(machine_id, user_id, opening_cash, ctx: OperationContext) -> Shift:
    opening_cash = round_money(opening_cash)
    if opening_cash < ZERO:
        raise InvalidInput({"opening_cash": ["Opening cash cannot be negative."]})

    machine = POSMachine.objects.filter(pk=machine_id).first()
    if machine is None:
        raise NotFound("POS machine not found.")
    if machine.status != MachineStatus.ACTIVE:
        raise Conflict("This POS machine is disabled.", reason="MACHINE_DISABLED")
    user = _get_active_user(user_id)

    if Shift.objects.filter(opened_by=user, status=ShiftStatus.OPEN).exists():
        logger.warning("User %s tried to open a second shift", user.pk)
        raise Conflict("You already have an open shift.", reason="USER_HAS_OPEN_SHIFT")
    if Shift.objects.filter(machine=machine, status=ShiftStatus.OPEN).exists():
        logger.warning("Machine %s already has an open shift", machine.pk)
        raise Conflict("This machine already has an open shift.", reason="MACHINE_HAS_OPEN_SHIFT")

    try:
        with transaction.atomic():
            shift = Shift.objects.create(
                machine=machine,
                opened_by=user,
                opened_at=ctx.now,
                opening_cash=opening_cash,
            )
    except IntegrityError:
        logger.warning("Concurrent shift open on machine %s by user %s", machine.pk, user.pk)
        raise Conflict("A shift was opened concurrently for this machine or user.", reason="SHIFT_ALREADY_OPEN")

    log_audit(
        AuditAction.OPEN_SHIFT,
        ctx,
        shift,
        {"machine_id": machine.pk, "opening_cash": str(opening_cash)},
    )
    logger.info("Shift %s opened on machine %s by user %s with %s", shift.pk, machine.pk, user.pk, opening_cash)
    return shift


def expected_cash_for(shift: Shift) -> Decimal:
    """Opening cash plus every completed cash payment taken in the shift."""
    cash_in = shift.payments.filter(
        method=PaymentMethod.CASH,
        status=PaymentStatus.COMPLETED,
    ).aggregate(total=Sum("amount"))["total"]
    return round_money(shift.opening_cash + (cash_in or ZERO))


@transaction.atomic
def close_shift(shift_id, user_id, closing_cash, ctx: OperationContext) -> Shift:
    shift = Shift.objects.select_for_update().filter(pk=shift_id).first()
    if shift is None:
        raise NotFound("Shift not found.")
    if shift.status == ShiftStatus.CLOSED:
        raise Conflict("Shift is already closed.", reason="SHIFT_CLOSED")

    closing_cash = round_money(closing_cash)
    if closing_cash < ZERO:
        raise InvalidInput({"closing_cash": ["Closing cash cannot be negative."]})
    user = _get_active_user(user_id)
    if shift.opened_by_id != user.pk and not user.is_admin_role:
        raise PermissionDenied("Only the cashier who opened the shift or an admin can close it.")

    expected = expected_cash_for(shift)
    payment_count = shift.payments.count()

    shift.closing_cash = closing_cash
    shift.expected_cash = expected
    shift.cash_difference = round_money(closing_cash - expected)
    shift.closed_by = user
    shift.closed_at = ctx.now
    shift.status = ShiftStatus.CLOSED
    if shift.opening_cash == ZERO and closing_cash == ZERO and payment_count == 0:
        shift.activity_type = ShiftActivity.NO_ACTIVITY
        shift.notes = f"{shift.notes}\n{NO_ACTIVITY_NOTE}".strip()
    else:
        shift.activity_type = ShiftActivity.NORMAL
    shift.save(
        update_fields=[
            "closing_cash",
            "expected_cash",
            "cash_difference",
            "closed_by",
            "closed_at",
            "status",
            "activity_type",
            "notes",
        ]
    )

    log_audit(
        AuditAction.CLOSE_SHIFT,
        ctx,
        shift,
        {
            "closing_cash": str(closing_cash),
            "expected_cash": str(expected),
            "cash_difference": str(shift.cash_difference),
            "activity_type": shift.activity_type,
        },
    )
    logger.info(
        "Shift %s closed by user %s: expected=%s closing=%s difference=%s (%s)",
        shift.pk,
        user.pk,
        expected,
        closing_cash,
        shift.cash_difference,
        shift.activity_type,
    )
    return shift


def shift_summary(shift_id) -> dict:
    shift = Shift.objects.filter(pk=shift_id).select_related("machine", "opened_by", "closed_by").first()
    if shift is None:
        raise NotFound("Shift not found.")

    collected = shift.payments.filter(status__in=COLLECTED_STATUSES).aggregate(
        total=Sum("amount"),
        count=Count("id"),
        cash=Sum("amount", filter=Q(method=PaymentMethod.CASH)),
    )
    refunded = shift.refunds.aggregate(total=Sum("amount"), count=Count("id"))

    total_collected = round_money(collected["total"] or ZERO)
    total_refunded = round_money(refunded["total"] or ZERO)
    net_cash = round_money(total_collected - total_refunded)
    by_method = {
        row["method"]: round_money(row["total"])
        for row in shift.payments.filter(status__in=COLLECTED_STATUSES)
        .values("method")
        .annotate(total=Sum("amount"))
        .order_by("method")
    }
    return {
        "shift": shift,
        "total_collected": total_collected,
        "cash_collected": round_money(collected["cash"] or ZERO),
        "total_refunded": total_refunded,
        "net_cash": net_cash,
        "expected_cash": round_money(shift.opening_cash + net_cash),
        "payment_count": collected["count"],
        "refund_count": refunded["count"],
        "by_method": by_method,
    }


# ---------------------------------------------------------------------------
# Payments and refunds
# ---------------------------------------------------------------------------


def generate_receipt_number(now) -> str:
    return f"RCP-{now:%Y%m}-{now:%H%M%S}-{secrets.randbelow(10000):04d}"


def normalize_method(method) -> str:
    value = str(method or "").strip().lower()
    if value not in PaymentMethod.values:
        raise InvalidInput({"method": [f"'{method}' is not a supported payment method."]})
    return value


def clean_reference(method: str, amount: Decimal, reference, required: bool = True) -> str | None:
    if method == PaymentMethod.CASH:
        return None
    value = str(reference or "").strip().upper()
    if required and amount > ZERO and not value:
        raise InvalidInput(
            {"external_reference": ["A transaction reference is required for non-cash payments."]},
            reason="REFERENCE_REQUIRED",
        )
    return value or None


def _require_open_shift(shift) -> Shift:
    if shift is None:
        raise InvalidInput(
            {"shift": ["An open shift is required to take money."]},
            reason="SHIFT_REQUIRED",
        )
    if shift.status != ShiftStatus.OPEN:
        raise Conflict("The shift is already closed.", reason="SHIFT_CLOSED")
    return shift


def _create_payment(now, **fields) -> Payment:
    for attempt in range(1, RECEIPT_NUMBER_ATTEMPTS + 1):
        receipt_number = generate_receipt_number(now)
        try:
            with transaction.atomic():
                return Payment.objects.create(receipt_number=receipt_number, **fields)
        except IntegrityError:
            if attempt == RECEIPT_NUMBER_ATTEMPTS or not Payment.objects.filter(
                receipt_number=receipt_number
            ).exists():
                raise
            logger.info("Receipt number %s collided, retrying", receipt_number)


@transaction.atomic
def record_payment(
    member,
    amount,
    method,
    status,
    ctx: OperationContext,
    subscription=None,
    external_reference=None,
    notes: str = "",
    shift=None,
) -> Payment:
    amount = round_money(amount)
    if amount < ZERO:
        raise InvalidInput({"amount": ["Amount cannot be negative."]})
    method = normalize_method(method)
    status = str(status or "").strip().lower()
    if status not in (PaymentStatus.COMPLETED, PaymentStatus.PENDING):
        raise InvalidInput({"status": ["New payments are either completed or pending."]})

    shift = shift or ctx.shift
    if status == PaymentStatus.COMPLETED:
        shift = _require_open_shift(shift)
        reference = clean_reference(method, amount, external_reference)
    else:
        reference = clean_reference(method, amount, external_reference, required=False)

    payment = _create_payment(
        ctx.now,
        member=member,
        subscription=subscription,
        shift=shift,
        amount=amount,
        method=method,
        status=status,
        external_reference=reference,
        paid_at=ctx.now if status == PaymentStatus.COMPLETED else None,
        notes=notes or "",
        created_by=ctx.actor if ctx.actor_id else None,
        collector_name=ctx.actor_name,
    )
    log_audit(
        AuditAction.CREATE_PAYMENT,
        ctx,
        payment,
        {
            "member_id": member.pk,
            "subscription_id": getattr(subscription, "pk", None),
            "amount": str(amount),
            "method": method,
            "status": status,
            "receipt_number": payment.receipt_number,
        },
    )
    logger.info(
        "Payment %s recorded: %s %s [%s] member=%s shift=%s",
        payment.receipt_number,
        amount,
        method,
        status,
        member.pk,
        getattr(shift, "pk", None),
    )
    return payment


@transaction.atomic
def record_counter_payment(member_id, amount, method, ctx: OperationContext, external_reference=None, notes=""):
    """A standalone payment taken at the counter, with its receipt."""
    member = Member.objects.filter(pk=member_id).first()
    if member is None:
        raise NotFound("Member not found.")
    payment = record_payment(
        member,
        amount,
        method,
        PaymentStatus.COMPLETED,
        ctx,
        external_reference=external_reference,
        notes=notes,
    )
    receipt, _ = emit_payment_receipt(payment, ctx)
    return payment, receipt


@transaction.atomic
def split_settlement(
    member,
    total,
    paid_now,
    method,
    ctx: OperationContext,
    subscription=None,
    external_reference=None,
    notes: str = "",
) -> list[Payment]:
    """Record what was paid now and invoice the rest.

    Creates at most one completed payment for ``paid_now`` and, when money
    is still owed, exactly one pending invoice for the remainder.
    """
    total = clamp_money(total)
    paid_now = round_money(paid_now)
    if paid_now < ZERO:
        raise InvalidInput({"paid_amount": ["Paid amount cannot be negative."]})
    if paid_now > total:
        raise InvalidInput({"paid_amount": ["Paid amount cannot exceed the total price."]}, reason="OVERPAYMENT")

    payments = []
    if paid_now > ZERO:
        payments.append(
            record_payment(
                member,
                paid_now,
                method,
                PaymentStatus.COMPLETED,
                ctx,
                subscription=subscription,
                external_reference=external_reference,
                notes=notes,
            )
        )
    remainder = round_money(total - paid_now)
    if remainder > ZERO:
        payments.append(
            record_payment(
                member,
                remainder,
                method,
                PaymentStatus.PENDING,
                ctx,
                subscription=subscription,
                notes=f"Outstanding balance of {remainder}",
            )
        )
    return payments


@transaction.atomic
def collect_balance(subscription, amount, method, ctx: OperationContext, external_reference=None) -> Payment:
    """Take money against a subscription's outstanding invoice."""
    from subscriptions.models import Subscription

    subscription = Subscription.objects.select_for_update().get(pk=subscription.pk)
    amount = round_money(amount)
    if amount <= ZERO:
        raise InvalidInput({"amount": ["Amount must be greater than zero."]})

    invoice = (
        Payment.objects.select_for_update()
        .filter(subscription=subscription, status=PaymentStatus.PENDING)
        .order_by("created_at", "id")
        .first()
    )
    outstanding = invoice.amount if invoice else ZERO
    if amount > outstanding:
        raise InvalidInput(
            {"amount": [f"Amount exceeds the outstanding balance of {outstanding}."]},
            reason="OVERPAYMENT",
        )

    method = normalize_method(method)
    shift = _require_open_shift(ctx.shift)
    reference = clean_reference(method, amount, external_reference)

    if amount == invoice.amount:
        invoice.method = method
        invoice.shift = shift
        invoice.status = PaymentStatus.COMPLETED
        invoice.external_reference = reference
        invoice.paid_at = ctx.now
        invoice.created_by = ctx.actor if ctx.actor_id else None
        invoice.collector_name = ctx.actor_name
        invoice.save(
            update_fields=[
                "method",
                "shift",
                "status",
                "external_reference",
                "paid_at",
                "created_by",
                "collector_name",
                "updated_at",
            ]
        )
        payment = invoice
    else:
        invoice.amount = round_money(invoice.amount - amount)
        invoice.save(update_fields=["amount", "updated_at"])
        payment = _create_payment(
            ctx.now,
            member=subscription.member,
            subscription=subscription,
            shift=shift,
            amount=amount,
            method=method,
            status=PaymentStatus.COMPLETED,
            external_reference=reference,
            paid_at=ctx.now,
            created_by=ctx.actor if ctx.actor_id else None,
            collector_name=ctx.actor_name,
        )

    subscription.refresh_payment_totals()
    emit_payment_receipt(payment, ctx)
    log_audit(
        AuditAction.COLLECT_BALANCE,
        ctx,
        payment,
        {
            "subscription_id": subscription.pk,
            "amount": str(amount),
            "method": method,
            "payment_status": subscription.payment_status,
        },
    )
    logger.info(
        "Collected %s %s for subscription %s (now %s)",
        amount,
        method,
        subscription.pk,
        subscription.payment_status,
    )
    return payment


def _refundable_after_usage(subscription) -> Decimal:
    totals = subscription.payments.filter(status__in=COLLECTED_STATUSES).aggregate(
        paid=Sum("amount"),
        refunded=Sum("refunded_total"),
    )
    return round_money(
        (totals["paid"] or ZERO) - (totals["refunded"] or ZERO) - subscription.used_non_refundable_amount
    )


def _is_goodwill_allowed(ctx: OperationContext, goodwill: bool, reason: str) -> bool:
    min_length = int(ledger_setting("GOODWILL_REASON_MIN_LENGTH"))
    return bool(goodwill and ctx.is_admin and len((reason or "").strip()) >= min_length)


@transaction.atomic
def record_refund(payment, amount, ctx: OperationContext, reason: str = "", goodwill: bool = False) -> Refund:
    shift = _require_open_shift(ctx.shift)
    amount = round_money(amount)
    if amount <= ZERO:
        raise InvalidInput({"amount": ["Refund amount must be greater than zero."]})

    payment = Payment.objects.select_for_update().select_related("subscription").get(pk=payment.pk)
    if payment.status not in COLLECTED_STATUSES:
        raise Conflict("Only collected payments can be refunded.", reason="PAYMENT_NOT_COLLECTED")

    balance = payment.amount - payment.refunded_total
    if balance <= ZERO or amount > balance + tolerance():
        logger.warning(
            "Refund of %s rejected for payment %s: only %s refundable",
            amount,
            payment.receipt_number,
            balance,
        )
        raise InvalidInput(
            {"amount": [f"Refund exceeds the refundable balance of {balance}."]},
            reason="REFUND_EXCEEDS_BALANCE",
        )
    amount = min(amount, balance)

    subscription = payment.subscription
    if subscription is not None and subscription.used_non_refundable_amount > ZERO:
        allowed = _refundable_after_usage(subscription)
        if amount > allowed and not _is_goodwill_allowed(ctx, goodwill, reason):
            logger.warning(
                "Refund of %s rejected for payment %s: consumed usage leaves %s",
                amount,
                payment.receipt_number,
                allowed,
            )
            raise InvalidInput(
                {"amount": [f"Only {max(allowed, ZERO)} is refundable after consumed usage."]},
                reason="NON_REFUNDABLE_USAGE",
            )

    refund = Refund.objects.create(
        payment=payment,
        shift=shift,
        amount=amount,
        reason=(reason or "").strip()[:255],
        goodwill=bool(goodwill),
        created_by=ctx.actor if ctx.actor_id else None,
    )
    Payment.objects.filter(pk=payment.pk).update(refunded_total=F("refunded_total") + amount)
    payment.refresh_from_db(fields=["refunded_total"])
    fully_refunded = payment.refunded_total >= payment.amount - tolerance()
    payment.status = PaymentStatus.REFUNDED if fully_refunded else PaymentStatus.PARTIAL_REFUND
    payment.save(update_fields=["status", "updated_at"])

    log_audit(
        AuditAction.REFUND_PAYMENT,
        ctx,
        payment,
        {
            "refund_id": refund.pk,
            "amount": str(amount),
            "refunded_total": str(payment.refunded_total),
            "reason": refund.reason,
            "goodwill": refund.goodwill,
        },
    )
    logger.info(
        "Refund %s of %s on payment %s (refunded %s of %s)",
        refund.pk,
        amount,
        payment.receipt_number,
        payment.refunded_total,
        payment.amount,
    )

    if subscription is not None:
        _cancel_when_fully_refunded(subscription, ctx)
    return refund


def _cancel_when_fully_refunded(subscription, ctx: OperationContext) -> None:
    from subscriptions.models import CancelSource, SubscriptionStatus

    subscription.refresh_from_db()
    if not subscription.can_transition(SubscriptionStatus.CANCELLED):
        return
    collected = subscription.payments.filter(status__in=COLLECTED_STATUSES)
    if not collected.exists() or collected.exclude(status=PaymentStatus.REFUNDED).exists():
        return
    subscription.cancel(
        ctx,
        reason="All payments refunded",
        source=CancelSource.AUTO_REFUND,
        used_amount=subscription.used_non_refundable_amount,
    )
    log_audit(
        AuditAction.CANCEL_SUBSCRIPTION,
        ctx,
        subscription,
        {"source": CancelSource.AUTO_REFUND},
    )
    logger.info("Subscription %s cancelled after full refund", subscription.pk)


def payments_visible_to(user, queryset=None):
    """Cashiers see pending invoices, their own payments and their open shift."""
    queryset = queryset if queryset is not None else Payment.objects.all()
    if user.is_admin_role:
        return queryset
    visible = Q(status=PaymentStatus.PENDING) | Q(created_by=user)
    shift = open_shift_for_user(user)
    if shift is not None:
        visible |= Q(shift=shift)
    return queryset.filter(visible)
