import logging

from django.db import IntegrityError, transaction
from django.db.models import F
from django.utils import timezone

from core.context import OperationContext
from core.money import ZERO, round_money

from .models import Receipt, ReceiptCounter, TransactionType

logger = logging.getLogger(__name__)

MAX_RECEIPT_ATTEMPTS = 3


def transaction_key(transaction_type: str, transaction_id) -> str:
    return f"{str(transaction_type or 'unknown').upper()}-{transaction_id}"


def next_receipt_number(day) -> str:
    """Take the next number in the per-day sequence, e.g. RC-20260118-000042."""
    counter, _ = ReceiptCounter.objects.select_for_update().get_or_create(day=day)
    ReceiptCounter.objects.filter(pk=counter.pk).update(last_number=F("last_number") + 1)
    counter.refresh_from_db(fields=["last_number"])
    return f"RC-{day:%Y%m%d}-{counter.last_number:06d}"


@transaction.atomic
def emit_receipt(
    transaction_type: str,
    transaction_id,
    ctx: OperationContext,
    items=None,
    totals=None,
    member=None,
    payment_method: str = "",
    notes: str = "",
) -> tuple[Receipt, bool]:
    key = transaction_key(transaction_type, transaction_id)
    existing = Receipt.objects.filter(transaction_key=key).first()
    if existing is not None:
        return existing, False

    issued_at = ctx.now
    day = timezone.localdate(issued_at)
    for attempt in range(1, MAX_RECEIPT_ATTEMPTS + 1):
        receipt_no = next_receipt_number(day)
        try:
            with transaction.atomic():
                receipt = Receipt.objects.create(
                    receipt_no=receipt_no,
                    transaction_key=key,
                    transaction_type=str(transaction_type).lower(),
                    payment_method=payment_method or "",
                    member=member,
                    customer_name=member.full_name if member else "",
                    customer_phone=member.phone if member else "",
                    customer_code=member.member_code if member else "",
                    staff=ctx.actor if ctx.actor_id else None,
                    staff_name=ctx.actor_name,
                    items=items or [],
                    totals=totals or {},
                    notes=notes or "",
                    issued_at=issued_at,
                )
        except IntegrityError:
            duplicate = Receipt.objects.filter(transaction_key=key).first()
            if duplicate is not None:
                return duplicate, False
            if attempt == MAX_RECEIPT_ATTEMPTS or not Receipt.objects.filter(receipt_no=receipt_no).exists():
                raise
            logger.warning("Receipt number %s already taken, retrying", receipt_no)
            continue
        logger.info("Issued receipt %s for %s", receipt.receipt_no, key)
        return receipt, True


def _money(value) -> str:
    return str(round_money(value))


def emit_payment_receipt(payment, ctx: OperationContext) -> tuple[Receipt, bool]:
    amount = round_money(payment.amount)
    items = [
        {
            "description": payment.notes or f"Payment {payment.receipt_number}",
            "quantity": 1,
            "unit_price": _money(amount),
            "total": _money(amount),
        }
    ]
    totals = {
        "subtotal": _money(amount),
        "discount": _money(ZERO),
        "total": _money(amount),
        "paid": _money(amount),
        "remaining": _money(ZERO),
    }
    return emit_receipt(
        TransactionType.PAYMENT,
        payment.pk,
        ctx,
        items=items,
        totals=totals,
        member=payment.member,
        payment_method=payment.method,
        notes=payment.receipt_number,
    )


def emit_subscription_receipt(subscription, ctx: OperationContext, payment=None) -> tuple[Receipt, bool]:
    plan = subscription.plan
    items = [
        {
            "description": plan.name,
            "duration_days": plan.duration_days,
            "start_date": subscription.start_date.isoformat(),
            "end_date": subscription.end_date.isoformat(),
            "quantity": 1,
            "unit_price": _money(subscription.price),
            "total": _money(subscription.price),
        }
    ]
    totals = {
        "subtotal": _money(subscription.price),
        "discount": _money(subscription.discount),
        "total": _money(subscription.total_price),
        "paid": _money(subscription.paid_amount),
        "remaining": _money(subscription.balance_due),
    }
    return emit_receipt(
        TransactionType.SUBSCRIPTION,
        subscription.pk,
        ctx,
        items=items,
        totals=totals,
        member=subscription.member,
        payment_method=payment.method if payment else "",
        notes=payment.receipt_number if payment else "",
    )
