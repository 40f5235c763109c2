"""User profile expansion and storage."""

from .service import ProfileService, ProfileSyncResult, expand_profile

__all__ = ["ProfileService", "ProfileSyncResult", "expand_profile"]
