"""Models layer - SQLAlchemy ORM models.

Models define the database schema.
All models inherit from the Base class defined in core.database.
"""

from app.core.database import Base
from app.models.brand_record import (
    IDENTITY_ONLY_CATEGORIES,
    BrandRecord,
    RecordCategory,
)
from app.models.generated_content import GeneratedContent
from app.models.subject_plan import SubjectPlan
from app.models.usage_counter import UsageCounter

__all__ = [
    "Base",
    "BrandRecord",
    "GeneratedContent",
    "IDENTITY_ONLY_CATEGORIES",
    "RecordCategory",
    "SubjectPlan",
    "UsageCounter",
]
