"""Target platform catalog."""

from .loader import PlatformCatalog, PlatformLoadError
from .models import Platform

__all__ = ["Platform", "PlatformCatalog", "PlatformLoadError"]
