"""
Custom QuerySet and Manager classes for soft-deleted models.

Usage:
    from core.managers import SoftDeleteManager

    class Notification(SoftDeleteMixin, BaseModel):
        objects = SoftDeleteManager()   # Default: excludes deleted
        all_objects = models.Manager()  # Includes deleted

    Notification.objects.all()              # Live notifications
    Notification.all_objects.all()          # Including expired
    Notification.objects.deleted()          # Only soft-deleted

Note:
    Foreign key access (delivery.notification) goes through the model's
    base manager, so soft-deleted parents stay reachable from their rows.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from django.db import models
from django.utils import timezone

if TYPE_CHECKING:
    from datetime import datetime


class SoftDeleteQuerySet(models.QuerySet):
    """
    QuerySet that provides soft delete operations.

    Methods:
        delete(): Soft delete (marks is_deleted=True)
        hard_delete(): Permanent delete
        deleted(): Filter to only deleted records
        active(): Filter to only active records
    """

    def delete(self, at: datetime | None = None) -> tuple[int, dict[str, int]]:
        """
        Soft delete all objects in queryset.

        Returns:
            Tuple of (count, {model_label: count}) matching Django's delete()
        """
        now = at or timezone.now()
        count = self.filter(is_deleted=False).update(
            is_deleted=True,
            deleted_at=now,
            updated_at=now,
        )
        return count, {self.model._meta.label: count}

    def hard_delete(self) -> tuple[int, dict[str, int]]:
        """
        Permanently delete all objects in queryset.

        Warning:
            This cannot be undone.
        """
        return super().delete()

    def deleted(self) -> SoftDeleteQuerySet:
        return self.filter(is_deleted=True)

    def active(self) -> SoftDeleteQuerySet:
        return self.filter(is_deleted=False)


class SoftDeleteManager(models.Manager):
    """
    Manager that filters out soft-deleted records by default.

    Always pair with a plain ``all_objects = models.Manager()`` for
    admin and retention access.
    """

    def get_queryset(self) -> SoftDeleteQuerySet:
        return SoftDeleteQuerySet(self.model, using=self._db).filter(is_deleted=False)

    def deleted(self) -> SoftDeleteQuerySet:
        return SoftDeleteQuerySet(self.model, using=self._db).filter(is_deleted=True)

    def with_deleted(self) -> SoftDeleteQuerySet:
        return SoftDeleteQuerySet(self.model, using=self._db)
