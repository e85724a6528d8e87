"""
mentor.admin module.

Django-admin registrations for the *frenchmentor* mentor application.
"""

from django.contrib import admin

from .models import SavedSession

# ---------------------------------------------------------------------------
# Admin registrations
# ---------------------------------------------------------------------------


@admin.register(SavedSession)
class SavedSessionAdmin(admin.ModelAdmin):
    """Admin configuration for :class:`mentor.models.SavedSession`."""

    list_display = ("id", "key", "writer", "balance", "updated_at")
    search_fields = ("key",)
    readonly_fields = ("created_at", "updated_at")
    ordering = ("-updated_at",)

    @staticmethod
    def balance(obj: "SavedSession") -> str:
        """Return the spark balance stored in the snapshot."""
        ledger = (obj.payload or {}).get("ledger") or {}
        return str(ledger.get("balance", "-"))
