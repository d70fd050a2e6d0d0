from django.contrib import admin
from django.contrib.auth.admin import UserAdmin as BaseUserAdmin
from accounts.models import User


@admin.register(User)
class UserAdmin(BaseUserAdmin):
    """Admin panel for riders, chauffeurs and operators"""

    list_display = [
        "username",
        "email",
        "role",
        "phone_number",
        "is_active",
    ]

    list_filter = [
        "role",
        "is_active",
        "date_joined",
    ]

    search_fields = [
        "username",
        "email",
        "phone_number",
    ]

    ordering = ("username",)

    fieldsets = BaseUserAdmin.fieldsets + (
        (
            "Booking Role",
            {"fields": ("role", "phone_number")},
        ),
    )

    add_fieldsets = BaseUserAdmin.add_fieldsets + (
        (
            "Booking Role",
            {"fields": ("role", "phone_number")},
        ),
    )
