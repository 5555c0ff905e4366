from django.contrib.auth.models import AbstractUser
from django.db import models


class UserRole(models.TextChoices):
    CASHIER = "cashier", "Cashier"
    ADMIN = "admin", "Admin"


class User(AbstractUser):
    role = models.CharField(
        max_length=20,
        choices=UserRole.choices,
        default=UserRole.CASHIER,
    )
    phone = models.CharField(max_length=20, blank=True)

    @property
    def is_admin_role(self) -> bool:
        return self.is_superuser or self.role == UserRole.ADMIN

    @property
    def display_name(self) -> str:
        return self.get_full_name() or self.username

    def __str__(self) -> str:
        return f"{self.username} ({self.role})"
