from datetime import timedelta
from decimal import Decimal

from django.contrib.auth import get_user_model
from django.test import TestCase
from django.urls import reverse
from django.utils import timezone
from rest_framework import status
from rest_framework.test import APIClient

from core.context import OperationContext
from core.exceptions import Conflict, InvalidInput
from members.models import Member, Plan, PlanType
from pos.models import Payment, PaymentStatus
from pos.services import open_shift, record_refund, register_machine
from receipts.models import Receipt
from users.models import UserRole

from .models import CancelSource, CancelType, PaymentState, Subscription, SubscriptionStatus
from .services import (
    acknowledge_all_alerts,
    cancel_subscription,
    collect_subscription_balance,
    create_subscription,
    expire_due_subscriptions,
    expired_alerts,
    freeze_subscription,
    preview_cancel,
    renew_subscription,
    toggle_pause,
    unfreeze_subscription,
)


class SubscriptionFixtureMixin:
    def make_fixtures(self):
        user_model = get_user_model()
        self.cashier = user_model.objects.create_user(username="cashier", password="pass1234", role=UserRole.CASHIER)
        self.admin = user_model.objects.create_user(username="manager", password="pass1234", role=UserRole.ADMIN)
        machine = register_machine("front-desk-1")
        self.shift = open_shift(machine.pk, self.cashier.pk, "0", OperationContext(actor=self.cashier))
        self.member = Member.objects.create(first_name="Omar", phone="0100000002", member_code="M-0002")
        self.monthly = Plan.objects.create(name="Monthly", price=Decimal("300.00"), duration_days=30)
        self.starter = Plan.objects.create(name="Starter", price=Decimal("100.00"), duration_days=30)

    def ctx(self, now=None, actor=None):
        fields = {"actor": actor or self.cashier, "shift": self.shift}
        if now is not None:
            fields["now"] = now
        return OperationContext(**fields)


class CreateSubscriptionTests(SubscriptionFixtureMixin, TestCase):
    def setUp(self):
        self.make_fixtures()

    def test_partial_payment_invoices_the_rest(self):
        result = create_subscription(self.member.pk, self.starter.pk, self.ctx(), paid_amount="40")

        subscription = result["subscription"]
        self.assertFalse(result["replay"])
        self.assertEqual(subscription.status, SubscriptionStatus.ACTIVE)
        self.assertEqual(subscription.paid_amount, Decimal("40.00"))
        self.assertEqual(subscription.payment_status, PaymentState.PARTIAL)
        self.assertEqual(subscription.balance_due, Decimal("60.00"))

        completed = subscription.payments.get(status=PaymentStatus.COMPLETED)
        pending = subscription.payments.get(status=PaymentStatus.PENDING)
        self.assertEqual(completed.amount, Decimal("40.00"))
        self.assertEqual(pending.amount, Decimal("60.00"))
        self.assertEqual(result["receipt"].totals["remaining"], "60.00")

    def test_end_date_follows_plan_duration(self):
        ctx = self.ctx()
        subscription = create_subscription(self.member.pk, self.monthly.pk, ctx, payment_status="paid")["subscription"]
        self.assertEqual(subscription.start_date, ctx.now)
        self.assertEqual(subscription.end_date, ctx.now + timedelta(days=30))
        self.assertEqual(subscription.payment_status, PaymentState.PAID)

    def test_discount_reduces_total(self):
        subscription = create_subscription(
            self.member.pk,
            self.monthly.pk,
            self.ctx(),
            discount="50",
            payment_status="paid",
        )["subscription"]
        self.assertEqual(subscription.total_price, Decimal("250.00"))
        self.assertEqual(subscription.paid_amount, Decimal("250.00"))

    def test_discount_above_price_rejected(self):
        with self.assertRaises(InvalidInput) as raised:
            create_subscription(self.member.pk, self.monthly.pk, self.ctx(), discount="301")
        self.assertEqual(raised.exception.reason, "DISCOUNT_EXCEEDS_PRICE")

    def test_overpayment_leaves_nothing_behind(self):
        with self.assertRaises(InvalidInput) as raised:
            create_subscription(self.member.pk, self.starter.pk, self.ctx(), paid_amount="150")
        self.assertEqual(raised.exception.reason, "OVERPAYMENT")
        self.assertFalse(Subscription.objects.exists())
        self.assertFalse(Payment.objects.exists())

    def test_package_plan_is_not_a_subscription(self):
        package = Plan.objects.create(name="10 Sessions", plan_type=PlanType.PACKAGE, price=Decimal("200.00"), total_sessions=10)
        with self.assertRaises(InvalidInput) as raised:
            create_subscription(self.member.pk, package.pk, self.ctx())
        self.assertEqual(raised.exception.reason, "PLAN_UNAVAILABLE")

    def test_second_active_subscription_conflicts(self):
        create_subscription(self.member.pk, self.monthly.pk, self.ctx(), payment_status="paid")

        with self.assertRaises(Conflict) as raised:
            create_subscription(self.member.pk, self.starter.pk, self.ctx(), payment_status="paid")
        self.assertEqual(raised.exception.reason, "ACTIVE_SUBSCRIPTION_EXISTS")
        self.assertEqual(Subscription.objects.filter(status=SubscriptionStatus.ACTIVE).count(), 1)

    def test_quick_resubmission_is_replayed(self):
        first = create_subscription(self.member.pk, self.starter.pk, self.ctx(), paid_amount="40")
        second = create_subscription(self.member.pk, self.starter.pk, self.ctx(), paid_amount="40")

        self.assertTrue(second["replay"])
        self.assertEqual(second["subscription"].pk, first["subscription"].pk)
        self.assertEqual(Subscription.objects.count(), 1)
        self.assertEqual(Payment.objects.count(), 2)
        self.assertEqual(Receipt.objects.count(), 1)

    def test_idempotency_key_is_replayed(self):
        first = create_subscription(
            self.member.pk,
            self.monthly.pk,
            self.ctx(),
            payment_status="paid",
            idempotency_key="sub-key-1",
        )
        second = create_subscription(
            self.member.pk,
            self.monthly.pk,
            self.ctx(actor=self.admin),
            payment_status="paid",
            idempotency_key="sub-key-1",
        )
        self.assertTrue(second["replay"])
        self.assertEqual(second["subscription"].pk, first["subscription"].pk)
        self.assertEqual(second["receipt"].pk, first["receipt"].pk)

    def test_idempotency_key_is_scoped_to_member(self):
        other = Member.objects.create(first_name="Yara", phone="0100000009", member_code="M-0009")
        create_subscription(self.member.pk, self.monthly.pk, self.ctx(), payment_status="paid", idempotency_key="k-9")

        with self.assertRaises(Conflict) as raised:
            create_subscription(other.pk, self.monthly.pk, self.ctx(), payment_status="paid", idempotency_key="k-9")
        self.assertEqual(raised.exception.reason, "IDEMPOTENCY_KEY_REUSED")
        self.assertFalse(Subscription.objects.filter(member=other).exists())

    def test_resubscribe_right_after_cancel_opens_new_cycle(self):
        first = create_subscription(self.member.pk, self.monthly.pk, self.ctx(), payment_status="paid")["subscription"]
        cancel_subscription(first.pk, self.ctx(), cancel_type=CancelType.IMMEDIATE)

        result = create_subscription(self.member.pk, self.monthly.pk, self.ctx(), payment_status="paid")

        self.assertFalse(result["replay"])
        self.assertNotEqual(result["subscription"].pk, first.pk)
        self.assertEqual(result["subscription"].status, SubscriptionStatus.ACTIVE)
        self.assertEqual(Subscription.objects.filter(status=SubscriptionStatus.ACTIVE).count(), 1)


class LifecycleTests(SubscriptionFixtureMixin, TestCase):
    def setUp(self):
        self.make_fixtures()
        self.subscription = create_subscription(
            self.member.pk,
            self.monthly.pk,
            self.ctx(),
            payment_status="paid",
        )["subscription"]

    def test_pause_and_resume_extends_by_whole_days(self):
        paused_at = timezone.now()
        original_end = self.subscription.end_date
        toggle_pause(self.subscription.pk, self.ctx(now=paused_at), reason="Travel")

        resumed = toggle_pause(self.subscription.pk, self.ctx(now=paused_at + timedelta(days=2, hours=3)))

        self.assertEqual(resumed.status, SubscriptionStatus.ACTIVE)
        self.assertEqual(resumed.end_date, original_end + timedelta(days=3))
        interval = resumed.pause_intervals.get()
        self.assertEqual(interval.duration_days, 3)
        self.assertEqual(interval.reason, "Travel")

    def test_resume_without_open_pause_adds_no_days(self):
        original_end = self.subscription.end_date
        toggle_pause(self.subscription.pk, self.ctx())
        self.subscription.pause_intervals.all().delete()

        resumed = toggle_pause(self.subscription.pk, self.ctx(now=timezone.now() + timedelta(days=5)))

        self.assertEqual(resumed.status, SubscriptionStatus.ACTIVE)
        self.assertEqual(resumed.end_date, original_end)
        interval = resumed.pause_intervals.get()
        self.assertEqual(interval.duration_days, 0)
        self.assertEqual(interval.started_at, interval.ended_at)

    def test_resume_blocked_by_other_active_subscription(self):
        toggle_pause(self.subscription.pk, self.ctx())
        create_subscription(self.member.pk, self.starter.pk, self.ctx(), payment_status="paid")

        with self.assertRaises(Conflict) as raised:
            toggle_pause(self.subscription.pk, self.ctx())
        self.assertEqual(raised.exception.reason, "ACTIVE_SUBSCRIPTION_EXISTS")

    def test_freeze_bounds(self):
        for days in (0, 31, "many"):
            with self.assertRaises(InvalidInput):
                freeze_subscription(self.subscription.pk, days, self.ctx())

    def test_freeze_then_unfreeze(self):
        original_end = self.subscription.end_date
        frozen = freeze_subscription(self.subscription.pk, 10, self.ctx())
        self.assertEqual(frozen.status, SubscriptionStatus.FROZEN)
        self.assertEqual(frozen.end_date, original_end + timedelta(days=10))

        with self.assertRaises(Conflict):
            toggle_pause(self.subscription.pk, self.ctx())

        active = unfreeze_subscription(self.subscription.pk, self.ctx())
        self.assertEqual(active.status, SubscriptionStatus.ACTIVE)
        self.assertIsNone(active.frozen_until)

    def test_renew_expires_previous_cycle(self):
        renewed = renew_subscription(self.subscription.pk, self.monthly.pk, self.ctx(), payment_status="paid")

        self.subscription.refresh_from_db()
        new_cycle = renewed["subscription"]
        self.assertFalse(renewed["replay"])
        self.assertEqual(self.subscription.status, SubscriptionStatus.EXPIRED)
        self.assertEqual(new_cycle.previous_subscription_id, self.subscription.pk)
        self.assertEqual(new_cycle.status, SubscriptionStatus.ACTIVE)

    def test_quick_renew_resubmission_is_replayed(self):
        first = renew_subscription(self.subscription.pk, self.monthly.pk, self.ctx(), payment_status="paid")
        second = renew_subscription(self.subscription.pk, self.monthly.pk, self.ctx(), payment_status="paid")

        self.assertTrue(second["replay"])
        self.assertEqual(second["subscription"].pk, first["subscription"].pk)
        self.assertEqual(Subscription.objects.filter(member=self.member).count(), 2)
        self.assertEqual(Subscription.objects.filter(status=SubscriptionStatus.ACTIVE).count(), 1)

    def test_expire_due_subscriptions_and_alerts(self):
        now = timezone.now()
        self.assertEqual(expire_due_subscriptions(now), 0)

        later = self.subscription.end_date + timedelta(minutes=1)
        self.assertEqual(expire_due_subscriptions(later), 1)
        self.subscription.refresh_from_db()
        self.assertEqual(self.subscription.status, SubscriptionStatus.EXPIRED)

        self.assertEqual(list(expired_alerts(later, unacknowledged_only=True)), [self.subscription])
        self.assertEqual(acknowledge_all_alerts(self.ctx(now=later)), 1)
        self.assertFalse(expired_alerts(later, unacknowledged_only=True).exists())


class BalanceAndCancelTests(SubscriptionFixtureMixin, TestCase):
    def setUp(self):
        self.make_fixtures()

    def test_collect_balance_settles_invoice(self):
        subscription = create_subscription(self.member.pk, self.starter.pk, self.ctx(), paid_amount="40")["subscription"]

        subscription, payment = collect_subscription_balance(subscription.pk, "20", "cash", self.ctx())
        self.assertEqual(payment.amount, Decimal("20.00"))
        self.assertEqual(subscription.paid_amount, Decimal("60.00"))
        self.assertEqual(subscription.payment_status, PaymentState.PARTIAL)
        self.assertEqual(subscription.payments.get(status=PaymentStatus.PENDING).amount, Decimal("40.00"))

        subscription, payment = collect_subscription_balance(subscription.pk, "40", "cash", self.ctx())
        self.assertEqual(subscription.payment_status, PaymentState.PAID)
        self.assertFalse(subscription.payments.filter(status=PaymentStatus.PENDING).exists())

    def test_collect_more_than_owed_rejected(self):
        subscription = create_subscription(self.member.pk, self.starter.pk, self.ctx(), paid_amount="40")["subscription"]
        with self.assertRaises(InvalidInput) as raised:
            collect_subscription_balance(subscription.pk, "61", "cash", self.ctx())
        self.assertEqual(raised.exception.reason, "OVERPAYMENT")

    def test_preview_prorates_used_days(self):
        subscription = create_subscription(self.member.pk, self.monthly.pk, self.ctx(), payment_status="paid")["subscription"]

        preview = preview_cancel(subscription.pk, self.ctx(now=subscription.start_date + timedelta(days=10)))

        self.assertEqual(preview["used_days"], 10)
        self.assertEqual(preview["total_duration"], 30)
        self.assertEqual(preview["used_amount"], Decimal("100.00"))
        self.assertEqual(preview["refundable_amount"], Decimal("200.00"))
        subscription.refresh_from_db()
        self.assertEqual(subscription.status, SubscriptionStatus.ACTIVE)

    def test_prorated_cancel_refunds_unused_days(self):
        subscription = create_subscription(self.member.pk, self.monthly.pk, self.ctx(), payment_status="paid")["subscription"]

        result = cancel_subscription(
            subscription.pk,
            self.ctx(now=subscription.start_date + timedelta(days=10)),
            cancel_type=CancelType.PRORATED,
        )

        cancelled = result["subscription"]
        self.assertEqual(result["refund_amount"], Decimal("200.00"))
        self.assertEqual(cancelled.status, SubscriptionStatus.CANCELLED)
        self.assertEqual(cancelled.cancel_source, CancelSource.MANUAL)
        self.assertEqual(cancelled.used_non_refundable_amount, Decimal("100.00"))
        payment = cancelled.payments.get()
        self.assertEqual(payment.refunded_total, Decimal("200.00"))
        self.assertEqual(payment.status, PaymentStatus.PARTIAL_REFUND)

    def test_discount_does_not_lower_daily_rate(self):
        subscription = create_subscription(
            self.member.pk,
            self.monthly.pk,
            self.ctx(),
            discount="60",
            payment_status="paid",
        )["subscription"]

        preview = preview_cancel(subscription.pk, self.ctx(now=subscription.start_date + timedelta(days=10)))

        self.assertEqual(preview["paid_total"], Decimal("240.00"))
        self.assertEqual(preview["used_amount"], Decimal("100.00"))
        self.assertEqual(preview["refundable_amount"], Decimal("140.00"))

    def test_cancel_uses_admins_own_shift(self):
        admin_shift = open_shift(register_machine("back-office").pk, self.admin.pk, "0", OperationContext(actor=self.admin))
        subscription = create_subscription(self.member.pk, self.monthly.pk, self.ctx(), payment_status="paid")["subscription"]

        result = cancel_subscription(
            subscription.pk,
            OperationContext(actor=self.admin, now=subscription.start_date + timedelta(days=10)),
        )

        self.assertEqual(result["refund_amount"], Decimal("200.00"))
        refund = subscription.payments.get().refunds.get()
        self.assertEqual(refund.shift_id, admin_shift.pk)

    def test_cancel_without_any_shift_rejected(self):
        subscription = create_subscription(self.member.pk, self.monthly.pk, self.ctx(), payment_status="paid")["subscription"]

        with self.assertRaises(InvalidInput) as raised:
            cancel_subscription(
                subscription.pk,
                OperationContext(actor=self.admin, now=subscription.start_date + timedelta(days=10)),
            )
        self.assertEqual(raised.exception.reason, "SHIFT_REQUIRED")
        subscription.refresh_from_db()
        self.assertEqual(subscription.status, SubscriptionStatus.ACTIVE)

    def test_consumed_usage_needs_goodwill(self):
        subscription = create_subscription(self.member.pk, self.monthly.pk, self.ctx(), payment_status="paid")["subscription"]
        cancel_subscription(subscription.pk, self.ctx(now=subscription.start_date + timedelta(days=10)))
        payment = subscription.payments.get()

        with self.assertRaises(InvalidInput) as raised:
            record_refund(payment, "100", self.ctx())
        self.assertEqual(raised.exception.reason, "NON_REFUNDABLE_USAGE")

        refund = record_refund(payment, "100", self.ctx(actor=self.admin), reason="Member relocated", goodwill=True)
        self.assertTrue(refund.goodwill)
        payment.refresh_from_db()
        self.assertEqual(payment.status, PaymentStatus.REFUNDED)

    def test_immediate_cancel_keeps_payment(self):
        subscription = create_subscription(self.member.pk, self.monthly.pk, self.ctx(), payment_status="paid")["subscription"]

        result = cancel_subscription(subscription.pk, self.ctx(), cancel_type=CancelType.IMMEDIATE)

        self.assertEqual(result["refund_amount"], Decimal("0.00"))
        self.assertEqual(result["subscription"].status, SubscriptionStatus.CANCELLED)
        self.assertEqual(subscription.payments.get().refunded_total, Decimal("0.00"))

    def test_full_refund_cancels_subscription(self):
        subscription = create_subscription(self.member.pk, self.starter.pk, self.ctx(), payment_status="paid")["subscription"]

        record_refund(subscription.payments.get(), "100", self.ctx(), reason="Changed mind")

        subscription.refresh_from_db()
        self.assertEqual(subscription.status, SubscriptionStatus.CANCELLED)
        self.assertEqual(subscription.cancel_source, CancelSource.AUTO_REFUND)

    def test_cancel_only_active(self):
        subscription = create_subscription(self.member.pk, self.monthly.pk, self.ctx(), payment_status="paid")["subscription"]
        toggle_pause(subscription.pk, self.ctx())
        with self.assertRaises(Conflict):
            cancel_subscription(subscription.pk, self.ctx())


class SubscriptionApiTests(SubscriptionFixtureMixin, TestCase):
    def setUp(self):
        self.make_fixtures()
        self.client = APIClient()
        self.client.force_authenticate(self.cashier)

    def test_create_then_replay(self):
        payload = {"member_id": self.member.pk, "plan_id": self.starter.pk, "paid_amount": "40"}

        response = self.client.post(reverse("subscriptions-list"), data=payload, format="json")
        self.assertEqual(response.status_code, status.HTTP_201_CREATED)
        self.assertFalse(response.data["replay"])
        self.assertEqual(response.data["subscription"]["payment_status"], PaymentState.PARTIAL)
        self.assertEqual(len(response.data["payments"]), 2)
        self.assertTrue(response.data["receipt_no"].startswith("RC-"))

        response = self.client.post(reverse("subscriptions-list"), data=payload, format="json")
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertTrue(response.data["replay"])
        self.assertEqual(Subscription.objects.count(), 1)

    def test_idempotency_header(self):
        payload = {"member_id": self.member.pk, "plan_id": self.monthly.pk, "payment_status": "paid"}
        first = self.client.post(reverse("subscriptions-list"), data=payload, format="json", HTTP_IDEMPOTENCY_KEY="abc-1")
        second = self.client.post(reverse("subscriptions-list"), data=payload, format="json", HTTP_IDEMPOTENCY_KEY="abc-1")
        self.assertEqual(first.status_code, status.HTTP_201_CREATED)
        self.assertEqual(second.status_code, status.HTTP_200_OK)
        self.assertEqual(first.data["subscription"]["id"], second.data["subscription"]["id"])

    def test_toggle_pause_endpoint(self):
        subscription = create_subscription(self.member.pk, self.monthly.pk, self.ctx(), payment_status="paid")["subscription"]
        response = self.client.post(reverse("subscriptions-toggle-pause", kwargs={"pk": subscription.pk}), format="json")
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data["status"], SubscriptionStatus.PAUSED)
        self.assertEqual(len(response.data["pause_history"]), 1)

    def test_cancel_preview_is_admin_only(self):
        subscription = create_subscription(self.member.pk, self.monthly.pk, self.ctx(), payment_status="paid")["subscription"]
        url = reverse("subscriptions-preview-cancel", kwargs={"pk": subscription.pk})

        response = self.client.get(url)
        self.assertEqual(response.status_code, status.HTTP_403_FORBIDDEN)
        self.assertEqual(response.data["reason"], "FORBIDDEN")

        self.client.force_authenticate(self.admin)
        response = self.client.get(url)
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data["paid_total"], "300.00")

    def test_freeze_out_of_range_is_validation_error(self):
        subscription = create_subscription(self.member.pk, self.monthly.pk, self.ctx(), payment_status="paid")["subscription"]
        response = self.client.post(
            reverse("subscriptions-freeze", kwargs={"pk": subscription.pk}),
            data={"days": 45},
            format="json",
        )
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertEqual(response.data["reason"], "VALIDATION")
