from django.contrib.auth.models import AbstractUser
from django.core.validators import RegexValidator
from django.db import models


class User(AbstractUser):
    """Marketplace user. The role decides which side of a load the user sits on."""

    class Role(models.TextChoices):
        SHIPPER = "shipper", "Shipper"
        CARRIER = "carrier", "Carrier"
        ADMIN = "admin", "Admin"

    role = models.CharField(
        choices=Role.choices,
        default=Role.SHIPPER,
        max_length=20,
        help_text="Marketplace role used for authorization checks",
    )
    email = models.EmailField(unique=True)
    company_name = models.CharField(max_length=200, blank=True)
    phone_regex = RegexValidator(regex=r"^\+\d{10,15}$")
    phone = models.CharField(validators=[phone_regex], max_length=20, null=True)

    # carrier identity, filled in from the verification oracle at signup
    mc_number = models.CharField(max_length=20, blank=True)
    dot_number = models.CharField(max_length=20, blank=True)

    is_active = models.BooleanField(default=True)

    # timestamps
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    def __str__(self):
        return f"{self.get_full_name() or self.username} ({self.get_role_display()})"
