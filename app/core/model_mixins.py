"""
Model mixins providing reusable functionality for Django models.

Available Mixins:
    UUIDPrimaryKeyMixin: Use UUID as primary key
    SoftDeleteMixin: Soft delete support (is_deleted, deleted_at)

Usage:
    from core.models import BaseModel
    from core.model_mixins import SoftDeleteMixin, UUIDPrimaryKeyMixin

    class Notification(UUIDPrimaryKeyMixin, SoftDeleteMixin, BaseModel):
        objects = SoftDeleteManager()
        all_objects = models.Manager()

Note:
    SoftDeleteMixin requires SoftDeleteManager (see core.managers).
"""

from __future__ import annotations

import uuid
from typing import TYPE_CHECKING

from django.db import models
from django.utils import timezone

if TYPE_CHECKING:
    from datetime import datetime


class UUIDPrimaryKeyMixin(models.Model):
    """
    Use UUID as primary key instead of auto-increment integer.

    UUIDs are generated client-side, so delivery ids can be handed to
    Celery tasks and provider callbacks before the row is committed.
    """

    id = models.UUIDField(
        primary_key=True,
        default=uuid.uuid4,
        editable=False,
        help_text="Unique identifier (UUID v4)",
    )

    class Meta:
        abstract = True


class SoftDeleteMixin(models.Model):
    """
    Soft delete support for models.

    Marks records as deleted instead of removing them, so historical
    rows stay queryable through ``all_objects`` until a retention job
    hard-deletes them.

    Fields:
        is_deleted: Boolean flag indicating soft delete status
        deleted_at: Timestamp when the record was soft deleted
    """

    SOFT_DELETE_FIELDS = ("is_deleted", "deleted_at", "updated_at")

    is_deleted = models.BooleanField(
        default=False,
        db_index=True,
        help_text="Whether this record has been soft deleted",
    )
    deleted_at = models.DateTimeField(
        null=True,
        blank=True,
        help_text="Timestamp when this record was soft deleted",
    )

    class Meta:
        abstract = True

    def soft_delete(self, at: datetime | None = None) -> None:
        """
        Mark this record as deleted.

        Idempotent: a record that is already deleted keeps its
        original deleted_at.

        Args:
            at: Deletion time (defaults to timezone.now())
        """
        if self.is_deleted:
            return
        self.is_deleted = True
        self.deleted_at = at or timezone.now()
        self.save(update_fields=list(self.SOFT_DELETE_FIELDS))

    def restore(self) -> None:
        """Restore a soft-deleted record."""
        if not self.is_deleted:
            return
        self.is_deleted = False
        self.deleted_at = None
        self.save(update_fields=list(self.SOFT_DELETE_FIELDS))

    def hard_delete(self) -> None:
        """
        Permanently delete this record.

        Warning:
            This cannot be undone. Cascades to dependent rows.
        """
        super().delete()
