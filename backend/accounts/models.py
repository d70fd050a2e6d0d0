from django.db import models
from django.contrib.auth.models import AbstractUser


class User(AbstractUser):
    """Extended user model with the actor role used across the booking lifecycle"""
    RIDER = 'rider'
    CHAUFFEUR = 'chauffeur'
    OPERATOR = 'operator'

    ROLE_CHOICES = [
        (RIDER, 'Rider'),
        (CHAUFFEUR, 'Chauffeur'),
        (OPERATOR, 'Operator'),
    ]

    # Role & basic info
    role = models.CharField(max_length=10, choices=ROLE_CHOICES, default=RIDER)
    phone_number = models.CharField(max_length=15, blank=True)

    class Meta:
        db_table = 'users'

    def __str__(self):
        return f"{self.username} ({self.get_role_display()})"
