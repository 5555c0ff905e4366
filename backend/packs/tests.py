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
from members.models import CheckIn, Member, Plan, PlanType
from users.models import UserRole

from .models import CheckInIdempotencyRecord, MemberPackage, PackageSessionUsage, PackageStatus
from .services import assign_package, check_in_package, package_usages, set_package_status, sync_statuses


class PackageFixtureMixin:
    def make_fixtures(self):
        self.user = get_user_model().objects.create_user(username="cashier", password="pass1234", role=UserRole.CASHIER)
        self.member = Member.objects.create(first_name="Lina", phone="0100000004", member_code="M-0004")
        self.plan = Plan.objects.create(
            name="3 PT Sessions",
            plan_type=PlanType.PACKAGE,
            price=Decimal("90.00"),
            total_sessions=3,
            validity_days=30,
        )
        self.ctx = OperationContext(actor=self.user)


class AssignPackageTests(PackageFixtureMixin, TestCase):
    def setUp(self):
        self.make_fixtures()

    def test_assignment_starts_full(self):
        assignment = assign_package(self.member.pk, self.plan.pk, self.ctx)

        self.assertEqual(assignment.status, PackageStatus.ACTIVE)
        self.assertEqual(assignment.total_sessions, 3)
        self.assertEqual(assignment.remaining_sessions, 3)
        self.assertEqual(assignment.session_price, Decimal("30.00"))
        self.assertEqual(assignment.session_name, "3 PT Sessions")
        self.assertEqual(assignment.end_date, self.ctx.now + timedelta(days=30))

    def test_second_active_package_conflicts(self):
        assign_package(self.member.pk, self.plan.pk, self.ctx)

        with self.assertRaises(Conflict) as raised:
            assign_package(self.member.pk, self.plan.pk, self.ctx)
        self.assertEqual(raised.exception.reason, "ACTIVE_PACKAGE_EXISTS")

    def test_inactive_or_wrong_plan_rejected(self):
        inactive = Plan.objects.create(
            name="Old Pack",
            plan_type=PlanType.PACKAGE,
            price=Decimal("50.00"),
            total_sessions=5,
            is_active=False,
        )
        monthly = Plan.objects.create(name="Monthly", price=Decimal("300.00"), duration_days=30)

        for plan in (inactive, monthly):
            with self.assertRaises(InvalidInput) as raised:
                assign_package(self.member.pk, plan.pk, self.ctx)
            self.assertEqual(raised.exception.reason, "PLAN_UNAVAILABLE")
        self.assertFalse(MemberPackage.objects.exists())

    def test_completed_package_frees_the_slot(self):
        first = assign_package(self.member.pk, self.plan.pk, self.ctx)
        MemberPackage.objects.filter(pk=first.pk).update(remaining_sessions=0)

        second = assign_package(self.member.pk, self.plan.pk, self.ctx)

        first.refresh_from_db()
        self.assertEqual(first.status, PackageStatus.COMPLETED)
        self.assertEqual(second.status, PackageStatus.ACTIVE)

    def test_sync_expires_packages_past_end_date(self):
        assignment = assign_package(
            self.member.pk,
            self.plan.pk,
            self.ctx,
            start_date=self.ctx.now - timedelta(days=40),
        )

        self.assertEqual(sync_statuses(timezone.now()), 1)
        assignment.refresh_from_db()
        self.assertEqual(assignment.status, PackageStatus.EXPIRED)


class PackageCheckInTests(PackageFixtureMixin, TestCase):
    def setUp(self):
        self.make_fixtures()
        self.assignment = assign_package(self.member.pk, self.plan.pk, self.ctx)

    def test_check_in_consumes_one_session(self):
        payload, replay = check_in_package(self.assignment.pk, self.ctx)

        self.assertFalse(replay)
        self.assertEqual(payload["assignment"]["remaining_sessions"], 2)
        self.assertEqual(payload["assignment"]["used_sessions"], 1)
        checkin = CheckIn.objects.get(pk=payload["checkin"]["checkin_id"])
        self.assertEqual(checkin.notes["visit_type"], "PACKAGE")
        self.assertEqual(checkin.notes["assignment_id"], self.assignment.pk)

    def test_same_key_consumes_once(self):
        first, first_replay = check_in_package(self.assignment.pk, self.ctx, idempotency_key="tap-1")
        second, second_replay = check_in_package(self.assignment.pk, self.ctx, idempotency_key="tap-1")

        self.assertFalse(first_replay)
        self.assertTrue(second_replay)
        self.assertEqual(first, second)
        self.assertEqual(PackageSessionUsage.objects.count(), 1)
        self.assertEqual(CheckInIdempotencyRecord.objects.count(), 1)
        self.assignment.refresh_from_db()
        self.assertEqual(self.assignment.remaining_sessions, 2)

    def test_last_session_completes_package(self):
        for _ in range(3):
            check_in_package(self.assignment.pk, self.ctx)

        self.assignment.refresh_from_db()
        self.assertEqual(self.assignment.remaining_sessions, 0)
        self.assertEqual(self.assignment.status, PackageStatus.COMPLETED)

        with self.assertRaises(Conflict) as raised:
            check_in_package(self.assignment.pk, self.ctx)
        self.assertEqual(raised.exception.reason, "PACKAGE_EXHAUSTED")
        self.assertEqual(package_usages(self.assignment.pk).count(), 3)

    def test_paused_package_refuses_check_in(self):
        set_package_status(self.assignment.pk, "paused", self.ctx)

        with self.assertRaises(Conflict) as raised:
            check_in_package(self.assignment.pk, self.ctx)
        self.assertEqual(raised.exception.reason, "PACKAGE_PAUSED")

        set_package_status(self.assignment.pk, PackageStatus.ACTIVE, self.ctx)
        payload, _ = check_in_package(self.assignment.pk, self.ctx)
        self.assertEqual(payload["assignment"]["remaining_sessions"], 2)

    def test_expired_package_refuses_check_in(self):
        MemberPackage.objects.filter(pk=self.assignment.pk).update(end_date=timezone.now() - timedelta(days=1))

        with self.assertRaises(Conflict) as raised:
            check_in_package(self.assignment.pk, self.ctx)
        self.assertEqual(raised.exception.reason, "PACKAGE_EXPIRED")

    def test_session_overrides_are_remembered(self):
        payload, _ = check_in_package(self.assignment.pk, self.ctx, session_name="Boxing", session_price="25")

        self.assertEqual(payload["checkin"]["session_name"], "Boxing")
        self.assertEqual(payload["checkin"]["session_price"], "25.00")
        self.assignment.refresh_from_db()
        self.assertEqual(self.assignment.session_name, "Boxing")

    def test_finished_package_status_is_locked(self):
        MemberPackage.objects.filter(pk=self.assignment.pk).update(status=PackageStatus.COMPLETED)

        with self.assertRaises(Conflict) as raised:
            set_package_status(self.assignment.pk, PackageStatus.ACTIVE, self.ctx)
        self.assertEqual(raised.exception.reason, "INVALID_TRANSITION")

        with self.assertRaises(InvalidInput):
            set_package_status(self.assignment.pk, PackageStatus.COMPLETED, self.ctx)


class PackageApiTests(PackageFixtureMixin, TestCase):
    def setUp(self):
        self.make_fixtures()
        self.client = APIClient()
        self.client.force_authenticate(self.user)

    def test_assign_and_check_in(self):
        response = self.client.post(
            reverse("pack-assignments-list"),
            data={"member_id": self.member.pk, "plan_id": self.plan.pk},
            format="json",
        )
        self.assertEqual(response.status_code, status.HTTP_201_CREATED)
        url = reverse("pack-assignments-checkins", kwargs={"pk": response.data["id"]})

        response = self.client.post(url, format="json", HTTP_IDEMPOTENCY_KEY="kiosk-42")
        self.assertEqual(response.status_code, status.HTTP_201_CREATED)
        self.assertFalse(response.data["replay"])

        replayed = self.client.post(url, format="json", HTTP_IDEMPOTENCY_KEY="kiosk-42")
        self.assertEqual(replayed.status_code, status.HTTP_200_OK)
        self.assertTrue(replayed.data["replay"])
        self.assertEqual(replayed.data["data"], response.data["data"])

        history = self.client.get(url)
        self.assertEqual(history.status_code, status.HTTP_200_OK)
        self.assertEqual(len(history.data), 1)

    def test_duplicate_assignment_is_conflict(self):
        assign_package(self.member.pk, self.plan.pk, self.ctx)
        response = self.client.post(
            reverse("pack-assignments-list"),
            data={"member_id": self.member.pk, "plan_id": self.plan.pk},
            format="json",
        )
        self.assertEqual(response.status_code, status.HTTP_409_CONFLICT)
        self.assertEqual(response.data["reason"], "ACTIVE_PACKAGE_EXISTS")

    def test_pause_via_status_endpoint(self):
        assignment = assign_package(self.member.pk, self.plan.pk, self.ctx)
        response = self.client.patch(
            reverse("pack-assignments-set-status", kwargs={"pk": assignment.pk}),
            data={"status": "PAUSED"},
            format="json",
        )
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data["status"], PackageStatus.PAUSED)
