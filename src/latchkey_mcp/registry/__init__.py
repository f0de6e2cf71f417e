"""Per-user browser profile registry."""

from .models import ProfileListing, ProfileRecord, ProfileResolution
from .store import ProfileNotFoundError, ProfileRegistry, profile_name

__all__ = [
    "ProfileListing",
    "ProfileNotFoundError",
    "ProfileRecord",
    "ProfileRegistry",
    "ProfileResolution",
    "profile_name",
]
