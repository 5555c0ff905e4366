from datetime import datetime
from decimal import Decimal

from django.contrib.auth import get_user_model
from django.test import TestCase
from django.urls import reverse
from django.utils import timezone
from rest_framework import status
from rest_framework.test import APIClient

from core.context import OperationContext
from core.exceptions import Conflict
from members.models import Member
from pos.models import PaymentStatus
from pos.services import open_shift, record_payment, register_machine
from users.models import UserRole

from .models import Receipt, TransactionType
from .services import emit_payment_receipt, emit_receipt, transaction_key


class ReceiptEmitterTests(TestCase):
    def setUp(self):
        self.cashier = get_user_model().objects.create_user(
            username="cashier",
            password="pass1234",
            role=UserRole.CASHIER,
            first_name="Sara",
        )
        self.member = Member.objects.create(first_name="Hana", phone="0100000003", member_code="M-0003")
        self.now = timezone.make_aware(datetime(2026, 1, 18, 9, 30))
        self.ctx = OperationContext(actor=self.cashier, now=self.now)

    def test_numbers_follow_daily_sequence(self):
        first, created = emit_receipt(TransactionType.PAYMENT, 11, self.ctx, member=self.member)
        second, _ = emit_receipt(TransactionType.PAYMENT, 12, self.ctx, member=self.member)

        self.assertTrue(created)
        self.assertEqual(first.receipt_no, "RC-20260118-000001")
        self.assertEqual(second.receipt_no, "RC-20260118-000002")
        self.assertEqual(first.customer_code, "M-0003")
        self.assertEqual(first.staff_name, "Sara")

    def test_same_transaction_gets_same_receipt(self):
        first, _ = emit_receipt(TransactionType.SUBSCRIPTION, 5, self.ctx)
        again, created = emit_receipt(TransactionType.SUBSCRIPTION, 5, self.ctx)

        self.assertFalse(created)
        self.assertEqual(again.pk, first.pk)
        self.assertEqual(Receipt.objects.count(), 1)
        self.assertEqual(first.transaction_key, transaction_key("subscription", 5))
        self.assertEqual(first.transaction_key, "SUBSCRIPTION-5")

    def test_receipts_cannot_be_edited(self):
        receipt, _ = emit_receipt(TransactionType.PAYMENT, 1, self.ctx)
        receipt.notes = "changed"

        with self.assertRaises(Conflict) as raised:
            receipt.save()
        self.assertEqual(raised.exception.reason, "RECEIPT_IMMUTABLE")
        receipt.refresh_from_db()
        self.assertEqual(receipt.notes, "")

    def test_payment_receipt_totals(self):
        shift = open_shift(register_machine("desk").pk, self.cashier.pk, "0", OperationContext(actor=self.cashier))
        payment = record_payment(
            self.member,
            "45.5",
            "cash",
            PaymentStatus.COMPLETED,
            OperationContext(actor=self.cashier, shift=shift),
        )

        receipt, _ = emit_payment_receipt(payment, self.ctx)

        self.assertEqual(receipt.transaction_type, TransactionType.PAYMENT)
        self.assertEqual(receipt.payment_method, "cash")
        self.assertEqual(receipt.totals["total"], "45.50")
        self.assertEqual(receipt.totals["remaining"], "0.00")
        self.assertEqual(receipt.items[0]["total"], str(Decimal("45.50")))


class ReceiptApiTests(TestCase):
    def setUp(self):
        user_model = get_user_model()
        self.cashier = user_model.objects.create_user(username="cashier", password="pass1234", role=UserRole.CASHIER)
        self.admin = user_model.objects.create_user(username="manager", password="pass1234", role=UserRole.ADMIN)
        ctx = OperationContext(actor=self.cashier)
        self.receipt, _ = emit_receipt(TransactionType.PAYMENT, 77, ctx, payment_method="card")
        self.client = APIClient()
        self.client.force_authenticate(self.cashier)

    def test_retrieve_by_receipt_number(self):
        response = self.client.get(reverse("receipts-detail", kwargs={"receipt_no": self.receipt.receipt_no}))
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data["transaction_key"], "PAYMENT-77")

    def test_qr_returns_png(self):
        response = self.client.get(reverse("receipts-qr", kwargs={"receipt_no": self.receipt.receipt_no}))
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response["Content-Type"], "image/png")

    def test_qr_for_unknown_receipt(self):
        response = self.client.get(reverse("receipts-qr", kwargs={"receipt_no": "RC-19990101-000001"}))
        self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND)
        self.assertEqual(response.data["reason"], "NOT_FOUND")

    def test_list_is_admin_only_and_filters(self):
        response = self.client.get(reverse("receipts-list"))
        self.assertEqual(response.status_code, status.HTTP_403_FORBIDDEN)

        emit_receipt(TransactionType.SUBSCRIPTION, 3, OperationContext(actor=self.admin))
        self.client.force_authenticate(self.admin)
        response = self.client.get(reverse("receipts-list"), data={"type": "payment"})
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual([row["receipt_no"] for row in response.data], [self.receipt.receipt_no])
