"""
Core Application - Infrastructure & Base Classes

This app contains infrastructure code shared by domain apps:

- Generic, reusable base classes (no domain-specific logic)
- Clear extension points for domain apps

Models (import from core.models):
    - BaseModel: Abstract model with timestamps (created_at, updated_at)

Model Mixins (import from core.model_mixins):
    - UUIDPrimaryKeyMixin: UUID as primary key
    - SoftDeleteMixin: Soft delete support (is_deleted, deleted_at)

Services (import from core.services):
    - BaseService: Base class for service layer
    - ServiceResult: Standard result wrapper for success/failure handling

Managers (import from core.managers):
    - SoftDeleteManager: Filter deleted records by default
    - SoftDeleteQuerySet: QuerySet with soft delete operations

Exceptions (import from core.exceptions):
    - BaseApplicationError: Base exception with error codes
    - ValidationError: Input validation failures
    - NotFoundError: Resource not found
    - ConflictError: State conflicts (duplicates, stale versions)
    - ExternalServiceError: Third-party service failures

Usage:
    from core.models import BaseModel
    from core.model_mixins import SoftDeleteMixin, UUIDPrimaryKeyMixin
    from core.services import BaseService, ServiceResult
    from core.managers import SoftDeleteManager
    from core.exceptions import ValidationError, NotFoundError

Note:
    - Business logic should NOT go here. Extend core classes in your domain apps.
    - Django models and model mixins are NOT imported here to avoid AppRegistryNotReady
      errors. Import them directly from their modules.
"""

# Services (no Django model dependencies)
from .services import BaseService, ServiceResult

# Exceptions (no Django dependencies)
from .exceptions import (
    BaseApplicationError,
    ConflictError,
    ExternalServiceError,
    NotFoundError,
    ValidationError,
)

# Note: Models, model mixins and managers are NOT imported here because they
# depend on Django's app registry being ready. Import them directly:
#   from core.models import BaseModel
#   from core.model_mixins import SoftDeleteMixin, UUIDPrimaryKeyMixin
#   from core.managers import SoftDeleteManager, SoftDeleteQuerySet

__all__ = [
    # Services
    "BaseService",
    "ServiceResult",
    # Exceptions
    "BaseApplicationError",
    "ValidationError",
    "NotFoundError",
    "ConflictError",
    "ExternalServiceError",
]
