from datetime import timedelta
from decimal import Decimal

from django.db import IntegrityError, ProgrammingError
from django.test import SimpleTestCase, TestCase, override_settings
from rest_framework import status
from rest_framework.exceptions import ValidationError

from .conf import ledger_setting
from .context import OperationContext
from .exceptions import Conflict, InvalidInput, ledger_exception_handler
from .money import ceil_days, clamp_money, round_money


class MoneyTests(SimpleTestCase):
    def test_round_money_half_up(self):
        self.assertEqual(round_money("10.005"), Decimal("10.01"))
        self.assertEqual(round_money("10.004"), Decimal("10.00"))
        self.assertEqual(round_money(None), Decimal("0.00"))
        self.assertEqual(round_money(2.675), Decimal("2.68"))

    def test_round_money_rejects_garbage(self):
        for value in ("abc", "NaN", "Infinity"):
            with self.assertRaises(InvalidInput):
                round_money(value)

    def test_clamp_money(self):
        self.assertEqual(clamp_money("-5"), Decimal("0.00"))
        self.assertEqual(clamp_money("5"), Decimal("5.00"))

    def test_ceil_days(self):
        self.assertEqual(ceil_days(timedelta(0)), 0)
        self.assertEqual(ceil_days(timedelta(seconds=-30)), 0)
        self.assertEqual(ceil_days(timedelta(seconds=1)), 1)
        self.assertEqual(ceil_days(timedelta(days=2)), 2)
        self.assertEqual(ceil_days(timedelta(days=2, minutes=1)), 3)


class LedgerSettingTests(SimpleTestCase):
    @override_settings(LEDGER={"MAX_FREEZE_DAYS": 14})
    def test_override_wins(self):
        self.assertEqual(ledger_setting("MAX_FREEZE_DAYS"), 14)
        self.assertEqual(ledger_setting("MONEY_TOLERANCE"), "0.01")


class OperationContextTests(SimpleTestCase):
    def test_system_context(self):
        ctx = OperationContext()
        self.assertIsNone(ctx.actor_id)
        self.assertEqual(ctx.actor_name, "System")
        self.assertFalse(ctx.is_admin)
        self.assertEqual(ctx.with_shift("shift").shift, "shift")
        self.assertEqual(ctx.with_shift("shift").now, ctx.now)


class ExceptionHandlerTests(TestCase):
    context = {"view": None, "request": None}

    def test_ledger_error_keeps_reason(self):
        response = ledger_exception_handler(Conflict("Shift is already closed.", reason="SHIFT_CLOSED"), self.context)
        self.assertEqual(response.status_code, status.HTTP_409_CONFLICT)
        self.assertEqual(
            response.data,
            {"success": False, "reason": "SHIFT_CLOSED", "detail": "Shift is already closed."},
        )

    def test_field_errors_are_kept_as_detail(self):
        response = ledger_exception_handler(ValidationError({"amount": ["Required."]}), self.context)
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertEqual(response.data["reason"], "VALIDATION")
        self.assertIn("amount", response.data["detail"])

    def test_integrity_error_is_conflict(self):
        response = ledger_exception_handler(IntegrityError("duplicate key"), self.context)
        self.assertEqual(response.status_code, status.HTTP_409_CONFLICT)
        self.assertEqual(response.data["reason"], "CONFLICT")

    def test_schema_error_asks_for_retry(self):
        response = ledger_exception_handler(ProgrammingError("no such column"), self.context)
        self.assertEqual(response.status_code, status.HTTP_503_SERVICE_UNAVAILABLE)
        self.assertEqual(response.data["reason"], "SCHEMA_MISMATCH")
        self.assertEqual(response["Retry-After"], "5")

    def test_unexpected_error_is_opaque(self):
        with self.assertLogs("core.exceptions", level="ERROR"):
            response = ledger_exception_handler(ValueError("boom"), self.context)
        self.assertEqual(response.status_code, status.HTTP_500_INTERNAL_SERVER_ERROR)
        self.assertEqual(response.data["reason"], "SERVER_ERROR")
        self.assertNotIn("boom", str(response.data))
