from django.contrib.auth.models import AbstractUser
from django.db import models


class User(AbstractUser):
    ROLE_ADMIN = "admin"
    ROLE_OPERATOR = "operator"
    ROLE_TECHNICIAN = "technician"

    ROLE_CHOICES = [
        (ROLE_ADMIN, "Admin"),
        (ROLE_OPERATOR, "Operator"),
        (ROLE_TECHNICIAN, "Technician"),
    ]

    role = models.CharField(max_length=20, choices=ROLE_CHOICES, default=ROLE_TECHNICIAN)
    sound_notifications = models.BooleanField(default=True)  # audible cue on alerts

    class Meta:
        db_table = "users"

    @property
    def display_name(self):
        return self.get_full_name() or self.username

    @property
    def is_operator(self):
        """Operators and admins both work the operation queue"""
        return self.role in (self.ROLE_OPERATOR, self.ROLE_ADMIN)

    @property
    def is_technician(self):
        return self.role == self.ROLE_TECHNICIAN
