"""Repositories layer - Data access and persistence.

Repositories handle all database operations using SQLAlchemy.
They abstract the database implementation from the service layer.
"""

from app.repositories.brand_record import BrandRecordRepository
from app.repositories.generated_content import (
    GeneratedContentOwnershipError,
    GeneratedContentRepository,
)
from app.repositories.usage import SubjectPlanRepository, UsageCounterRepository

__all__ = [
    "BrandRecordRepository",
    "GeneratedContentOwnershipError",
    "GeneratedContentRepository",
    "SubjectPlanRepository",
    "UsageCounterRepository",
]
