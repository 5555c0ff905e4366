from decimal import Decimal

from django.contrib.auth import get_user_model
from django.test import TestCase
from django.urls import reverse
from rest_framework import status
from rest_framework.test import APIClient

from core.context import OperationContext
from core.exceptions import Conflict, InvalidInput, NotFound
from core.models import AuditAction, AuditLog
from members.models import Member
from users.models import UserRole

from .models import NO_ACTIVITY_NOTE, Payment, PaymentStatus, POSMachine, ShiftActivity, ShiftStatus
from .services import (
    close_shift,
    expected_cash_for,
    open_shift,
    record_payment,
    record_refund,
    register_machine,
    shift_summary,
    split_settlement,
)


class LedgerFixtureMixin:
    def make_fixtures(self):
        user_model = get_user_model()
        self.cashier = user_model.objects.create_user(username="cashier", password="pass1234", role=UserRole.CASHIER)
        self.other_cashier = user_model.objects.create_user(
            username="cashier-2",
            password="pass1234",
            role=UserRole.CASHIER,
        )
        self.machine = register_machine("front-desk-1", "Front Desk")
        self.member = Member.objects.create(first_name="Mona", phone="0100000001", member_code="M-0001")

    def ctx(self, actor=None, shift=None):
        return OperationContext(actor=actor or self.cashier, shift=shift)


class ShiftLedgerTests(LedgerFixtureMixin, TestCase):
    def setUp(self):
        self.make_fixtures()

    def test_cash_payment_then_close_balances_drawer(self):
        shift = open_shift(self.machine.pk, self.cashier.pk, "0", self.ctx())
        record_payment(self.member, "50", "cash", PaymentStatus.COMPLETED, self.ctx(shift=shift))

        closed = close_shift(shift.pk, self.cashier.pk, "50", self.ctx())

        self.assertEqual(closed.status, ShiftStatus.CLOSED)
        self.assertEqual(closed.expected_cash, Decimal("50.00"))
        self.assertEqual(closed.cash_difference, Decimal("0.00"))
        self.assertEqual(closed.activity_type, ShiftActivity.NORMAL)
        self.assertEqual(closed.expected_cash, expected_cash_for(closed))
        self.assertEqual(closed.closed_by, self.cashier)

    def test_close_without_activity_is_tagged(self):
        shift = open_shift(self.machine.pk, self.cashier.pk, "0", self.ctx())

        closed = close_shift(shift.pk, self.cashier.pk, "0", self.ctx())

        self.assertEqual(closed.activity_type, ShiftActivity.NO_ACTIVITY)
        self.assertIn(NO_ACTIVITY_NOTE, closed.notes)
        self.assertEqual(closed.cash_difference, Decimal("0.00"))

    def test_card_payments_do_not_count_towards_drawer(self):
        shift = open_shift(self.machine.pk, self.cashier.pk, "20", self.ctx())
        record_payment(self.member, "30", "cash", PaymentStatus.COMPLETED, self.ctx(shift=shift))
        record_payment(
            self.member,
            "70",
            "card",
            PaymentStatus.COMPLETED,
            self.ctx(shift=shift),
            external_reference="pos-778",
        )

        closed = close_shift(shift.pk, self.cashier.pk, "45", self.ctx())

        self.assertEqual(closed.expected_cash, Decimal("50.00"))
        self.assertEqual(closed.cash_difference, Decimal("-5.00"))

    def test_user_cannot_hold_two_open_shifts(self):
        open_shift(self.machine.pk, self.cashier.pk, "0", self.ctx())
        second_machine = register_machine("front-desk-2")

        with self.assertRaises(Conflict) as raised:
            open_shift(second_machine.pk, self.cashier.pk, "0", self.ctx())
        self.assertEqual(raised.exception.reason, "USER_HAS_OPEN_SHIFT")

    def test_machine_cannot_have_two_open_shifts(self):
        open_shift(self.machine.pk, self.cashier.pk, "0", self.ctx())

        with self.assertRaises(Conflict) as raised:
            open_shift(self.machine.pk, self.other_cashier.pk, "0", self.ctx(actor=self.other_cashier))
        self.assertEqual(raised.exception.reason, "MACHINE_HAS_OPEN_SHIFT")

    def test_closing_is_terminal(self):
        shift = open_shift(self.machine.pk, self.cashier.pk, "0", self.ctx())
        close_shift(shift.pk, self.cashier.pk, "0", self.ctx())

        with self.assertRaises(Conflict):
            close_shift(shift.pk, self.cashier.pk, "0", self.ctx())

    def test_machine_is_free_after_close(self):
        shift = open_shift(self.machine.pk, self.cashier.pk, "0", self.ctx())
        close_shift(shift.pk, self.cashier.pk, "0", self.ctx())

        reopened = open_shift(self.machine.pk, self.other_cashier.pk, "10", self.ctx(actor=self.other_cashier))
        self.assertEqual(reopened.status, ShiftStatus.OPEN)

    def test_unknown_shift_and_machine(self):
        with self.assertRaises(NotFound):
            close_shift(999999, self.cashier.pk, "0", self.ctx())
        with self.assertRaises(NotFound):
            open_shift(999999, self.cashier.pk, "0", self.ctx())

    def test_negative_opening_cash_rejected(self):
        with self.assertRaises(InvalidInput):
            open_shift(self.machine.pk, self.cashier.pk, "-1", self.ctx())

    def test_open_and_close_are_audited(self):
        shift = open_shift(self.machine.pk, self.cashier.pk, "0", self.ctx())
        close_shift(shift.pk, self.cashier.pk, "0", self.ctx())

        actions = list(
            AuditLog.objects.filter(entity_type="Shift", entity_id=shift.pk).values_list("action", flat=True)
        )
        self.assertIn(AuditAction.OPEN_SHIFT, actions)
        self.assertIn(AuditAction.CLOSE_SHIFT, actions)

    def test_summary_nets_refunds_without_mutating(self):
        shift = open_shift(self.machine.pk, self.cashier.pk, "10", self.ctx())
        cash = record_payment(self.member, "100", "cash", PaymentStatus.COMPLETED, self.ctx(shift=shift))
        record_payment(
            self.member,
            "50",
            "transfer",
            PaymentStatus.COMPLETED,
            self.ctx(shift=shift),
            external_reference="TRX-1",
        )
        record_refund(cash, "30", self.ctx(shift=shift), reason="Overcharged")

        summary = shift_summary(shift.pk)

        self.assertEqual(summary["total_collected"], Decimal("150.00"))
        self.assertEqual(summary["total_refunded"], Decimal("30.00"))
        self.assertEqual(summary["net_cash"], Decimal("120.00"))
        self.assertEqual(summary["expected_cash"], Decimal("130.00"))
        self.assertEqual(summary["payment_count"], 2)
        self.assertEqual(summary["refund_count"], 1)
        shift.refresh_from_db()
        self.assertEqual(shift.status, ShiftStatus.OPEN)


class PaymentRecorderTests(LedgerFixtureMixin, TestCase):
    def setUp(self):
        self.make_fixtures()
        self.shift = open_shift(self.machine.pk, self.cashier.pk, "0", self.ctx())

    def test_non_cash_payment_requires_reference(self):
        with self.assertRaises(InvalidInput) as raised:
            record_payment(self.member, "25", "card", PaymentStatus.COMPLETED, self.ctx(shift=self.shift))
        self.assertIn("external_reference", raised.exception.detail)
        self.assertEqual(Payment.objects.count(), 0)

    def test_reference_is_trimmed_and_uppercased(self):
        payment = record_payment(
            self.member,
            "25",
            "Card",
            PaymentStatus.COMPLETED,
            self.ctx(shift=self.shift),
            external_reference="  ab-12 ",
        )
        self.assertEqual(payment.method, "card")
        self.assertEqual(payment.external_reference, "AB-12")

    def test_cash_payment_never_stores_reference(self):
        payment = record_payment(
            self.member,
            "25",
            "cash",
            PaymentStatus.COMPLETED,
            self.ctx(shift=self.shift),
            external_reference="IGNORED",
        )
        self.assertIsNone(payment.external_reference)
        self.assertTrue(payment.receipt_number.startswith("RCP-"))

    def test_unknown_method_rejected(self):
        with self.assertRaises(InvalidInput):
            record_payment(self.member, "25", "cheque", PaymentStatus.COMPLETED, self.ctx(shift=self.shift))

    def test_completed_payment_requires_shift(self):
        with self.assertRaises(InvalidInput) as raised:
            record_payment(self.member, "25", "cash", PaymentStatus.COMPLETED, self.ctx())
        self.assertEqual(raised.exception.reason, "SHIFT_REQUIRED")

    def test_pending_invoice_needs_no_shift(self):
        payment = record_payment(self.member, "25", "cash", PaymentStatus.PENDING, self.ctx())
        self.assertEqual(payment.status, PaymentStatus.PENDING)
        self.assertIsNone(payment.paid_at)

    def test_split_settlement_invoices_the_remainder(self):
        payments = split_settlement(self.member, "100", "40", "cash", self.ctx(shift=self.shift))

        self.assertEqual(len(payments), 2)
        completed, pending = payments
        self.assertEqual((completed.status, completed.amount), (PaymentStatus.COMPLETED, Decimal("40.00")))
        self.assertEqual((pending.status, pending.amount), (PaymentStatus.PENDING, Decimal("60.00")))

    def test_split_settlement_paid_in_full_has_no_invoice(self):
        payments = split_settlement(self.member, "100", "100", "cash", self.ctx(shift=self.shift))
        self.assertEqual([p.status for p in payments], [PaymentStatus.COMPLETED])

    def test_split_settlement_unpaid_is_one_invoice(self):
        payments = split_settlement(self.member, "100", "0", "card", self.ctx(shift=self.shift))
        self.assertEqual([p.status for p in payments], [PaymentStatus.PENDING])

    def test_refunds_accumulate_and_set_status(self):
        payment = record_payment(self.member, "100", "cash", PaymentStatus.COMPLETED, self.ctx(shift=self.shift))

        record_refund(payment, "30", self.ctx(shift=self.shift))
        payment.refresh_from_db()
        self.assertEqual(payment.refunded_total, Decimal("30.00"))
        self.assertEqual(payment.status, PaymentStatus.PARTIAL_REFUND)

        record_refund(payment, "70", self.ctx(shift=self.shift))
        payment.refresh_from_db()
        self.assertEqual(payment.refunded_total, Decimal("100.00"))
        self.assertEqual(payment.status, PaymentStatus.REFUNDED)
        self.assertEqual(payment.refunds.count(), 2)

    def test_refund_beyond_balance_rejected(self):
        payment = record_payment(self.member, "100", "cash", PaymentStatus.COMPLETED, self.ctx(shift=self.shift))
        record_refund(payment, "80", self.ctx(shift=self.shift))

        with self.assertRaises(InvalidInput) as raised:
            record_refund(payment, "25", self.ctx(shift=self.shift))
        self.assertEqual(raised.exception.reason, "REFUND_EXCEEDS_BALANCE")
        payment.refresh_from_db()
        self.assertEqual(payment.refunded_total, Decimal("80.00"))
        self.assertLessEqual(payment.refunded_total, payment.amount)

    def test_fully_refunded_payment_rejects_more(self):
        payment = record_payment(self.member, "50", "cash", PaymentStatus.COMPLETED, self.ctx(shift=self.shift))
        record_refund(payment, "50", self.ctx(shift=self.shift))

        with self.assertRaises(InvalidInput) as raised:
            record_refund(payment, "0.01", self.ctx(shift=self.shift))
        self.assertEqual(raised.exception.reason, "REFUND_EXCEEDS_BALANCE")
        self.assertEqual(payment.refunds.count(), 1)

    def test_refund_requires_shift(self):
        payment = record_payment(self.member, "100", "cash", PaymentStatus.COMPLETED, self.ctx(shift=self.shift))
        with self.assertRaises(InvalidInput) as raised:
            record_refund(payment, "10", self.ctx())
        self.assertEqual(raised.exception.reason, "SHIFT_REQUIRED")

    def test_refund_rejects_non_positive_amount(self):
        payment = record_payment(self.member, "100", "cash", PaymentStatus.COMPLETED, self.ctx(shift=self.shift))
        with self.assertRaises(InvalidInput):
            record_refund(payment, "0", self.ctx(shift=self.shift))


class PosApiTests(LedgerFixtureMixin, TestCase):
    def setUp(self):
        self.make_fixtures()
        self.client = APIClient()
        self.client.force_authenticate(self.cashier)

    def test_status_registers_machine(self):
        response = self.client.get(reverse("pos-status"), data={"machine_key": "tablet-9"})
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data["machine"]["machine_key"], "tablet-9")
        self.assertIsNone(response.data["open_shift"])
        self.assertTrue(POSMachine.objects.filter(machine_key="tablet-9").exists())

    def test_open_and_close_shift(self):
        response = self.client.post(
            reverse("shifts-open"),
            data={"machine_id": self.machine.pk, "opening_cash": "0"},
            format="json",
        )
        self.assertEqual(response.status_code, status.HTTP_201_CREATED)
        shift_id = response.data["id"]

        response = self.client.post(reverse("shifts-close", kwargs={"pk": shift_id}), data={"closing_cash": "0"}, format="json")
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data["activity_type"], ShiftActivity.NO_ACTIVITY)

    def test_second_open_is_conflict(self):
        open_shift(self.machine.pk, self.cashier.pk, "0", self.ctx())
        response = self.client.post(
            reverse("shifts-open"),
            data={"machine_id": self.machine.pk, "opening_cash": "0"},
            format="json",
        )
        self.assertEqual(response.status_code, status.HTTP_409_CONFLICT)
        self.assertFalse(response.data["success"])
        self.assertEqual(response.data["reason"], "USER_HAS_OPEN_SHIFT")

    def test_payment_requires_open_shift(self):
        response = self.client.post(
            reverse("payments-list"),
            data={"member_id": self.member.pk, "amount": "10", "method": "cash"},
            format="json",
        )
        self.assertEqual(response.status_code, status.HTTP_403_FORBIDDEN)

    def test_payment_issues_receipt(self):
        open_shift(self.machine.pk, self.cashier.pk, "0", self.ctx())
        response = self.client.post(
            reverse("payments-list"),
            data={"member_id": self.member.pk, "amount": "10", "method": "cash"},
            format="json",
        )
        self.assertEqual(response.status_code, status.HTTP_201_CREATED)
        self.assertTrue(response.data["receipt_no"].startswith("RC-"))
        self.assertEqual(response.data["payment"]["status"], PaymentStatus.COMPLETED)

    def test_card_payment_without_reference_is_validation_error(self):
        open_shift(self.machine.pk, self.cashier.pk, "0", self.ctx())
        response = self.client.post(
            reverse("payments-list"),
            data={"member_id": self.member.pk, "amount": "10", "method": "card"},
            format="json",
        )
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertEqual(response.data["reason"], "REFERENCE_REQUIRED")
        self.assertIn("external_reference", response.data["detail"])

    def test_refund_endpoint(self):
        shift = open_shift(self.machine.pk, self.cashier.pk, "0", self.ctx())
        payment = record_payment(self.member, "40", "cash", PaymentStatus.COMPLETED, self.ctx(shift=shift))

        response = self.client.post(
            reverse("payments-refund", kwargs={"pk": payment.pk}),
            data={"amount": "15", "reason": "Duplicate charge"},
            format="json",
        )
        self.assertEqual(response.status_code, status.HTTP_201_CREATED)
        self.assertEqual(response.data["payment"]["refunded_total"], "15.00")
        self.assertEqual(response.data["payment"]["status"], PaymentStatus.PARTIAL_REFUND)

    def test_summary_endpoint(self):
        shift = open_shift(self.machine.pk, self.cashier.pk, "5", self.ctx())
        record_payment(self.member, "20", "cash", PaymentStatus.COMPLETED, self.ctx(shift=shift))

        response = self.client.get(reverse("shifts-summary", kwargs={"pk": shift.pk}))
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data["total_collected"], "20.00")
        self.assertEqual(response.data["expected_cash"], "25.00")

    def test_shift_history_is_admin_only(self):
        response = self.client.get(reverse("shifts-list"))
        self.assertEqual(response.status_code, status.HTTP_403_FORBIDDEN)
