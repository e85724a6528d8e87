"""Database models for the mentor application.

Session state is stored as one JSON snapshot per key; the domain core never
reads these rows directly, it goes through ``mentor.persistence``.
"""

# ---------------------------------------------------------------------------
# Django
from django.db import models


class SavedSession(models.Model):
    """Latest snapshot of one learner session."""

    key = models.CharField(
        max_length=255,
        unique=True,
        help_text="Session key, usually derived from the user id",
    )
    payload = models.JSONField(
        default=dict, help_text="Serialized SessionState snapshot"
    )
    writer = models.CharField(
        max_length=64,
        blank=True,
        default="",
        help_text="Device id of the last writer, used to skip echoes",
    )
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        """Django model metadata."""

        ordering = ["-updated_at"]
        verbose_name = "Saved Session"
        verbose_name_plural = "Saved Sessions"

    def __str__(self) -> str:
        """Return the key and last update time for admin & debugging."""
        friendly_date: str = self.updated_at.strftime("%Y-%m-%d %H:%M")
        return f"{str(self.key)} ({friendly_date})"

    @property
    def snapshot_version(self) -> int:
        """Version number stored inside the payload, 0 if absent."""
        payload = self.payload or {}
        return int(payload.get("version", 0))
