"""Subject: whose data a request reads and whose quota it spends.

A subject is a primary user id plus an optional workspace id. With a
workspace present, brand records and plan/usage are owned by the workspace,
except identity-only categories which always stay with the user.
"""

from dataclasses import dataclass

from app.models.brand_record import IDENTITY_ONLY_CATEGORIES, RecordCategory


@dataclass(frozen=True)
class OwnerKey:
    """Column and value a record lookup is filtered by."""

    column: str
    value: str


@dataclass(frozen=True)
class Subject:
    """Identity and optional collective scope of one request."""

    user_id: str
    workspace_id: str | None = None

    @property
    def key(self) -> str:
        """Stable key for process-local per-subject structures."""
        if self.workspace_id:
            return f"{self.user_id}@{self.workspace_id}"
        return self.user_id

    @property
    def quota_owner(self) -> str:
        """Id the plan tier and monthly usage are attached to."""
        return self.workspace_id or self.user_id

    def owner_for(self, category: RecordCategory) -> OwnerKey:
        """Owner key to read ``category`` records with."""
        if self.workspace_id and category not in IDENTITY_ONLY_CATEGORIES:
            return OwnerKey("workspace_id", self.workspace_id)
        return OwnerKey("user_id", self.user_id)
