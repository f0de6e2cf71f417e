"""Platform catalog loading utilities."""

from __future__ import annotations

from pathlib import Path
from typing import Iterable

import yaml
from pydantic import ValidationError

from .models import Platform


class PlatformLoadError(RuntimeError):
    """Raised when one or more platform files cannot be parsed."""


class PlatformCatalog:
    """Loads platform definitions from YAML files on disk."""

    def __init__(self, search_paths: Iterable[Path] | None = None) -> None:
        paths = [Path(path) for path in (search_paths or [])]
        self._search_paths: list[Path] = [path for path in paths if path.exists()]

    @property
    def search_paths(self) -> list[Path]:
        return list(self._search_paths)

    def load_all(self) -> dict[str, Platform]:
        """Load platforms from all configured search paths.

        Later search paths override earlier ones when platform ids collide. A
        file may hold a single mapping or a list of mappings.
        """

        if not self._search_paths:
            return {}

        platforms: dict[str, Platform] = {}
        errors: list[str] = []

        for base in self._search_paths:
            for path in sorted(base.glob("*.yml")) + sorted(base.glob("*.yaml")):
                try:
                    document = yaml.safe_load(path.read_text(encoding="utf-8"))
                except yaml.YAMLError as exc:  # pragma: no cover - library type
                    errors.append(f"Failed to parse YAML in {path}: {exc}")
                    continue

                if document is None:
                    continue

                entries = document if isinstance(document, list) else [document]
                for entry in entries:
                    try:
                        platform = Platform.model_validate(entry)
                    except ValidationError as exc:
                        errors.append(f"Platform validation error in {path}: {exc}")
                        continue
                    platforms[platform.id] = platform

        if errors:
            raise PlatformLoadError("; ".join(errors))

        return platforms

    def get(self, platform_id: str) -> Platform:
        """Return a catalogued platform by id."""

        platforms = self.load_all()
        try:
            return platforms[platform_id.strip().lower()]
        except KeyError as exc:
            raise PlatformLoadError(f"Platform '{platform_id}' not found in search paths") from exc

    def resolve(self, platform_id: str) -> Platform:
        """Return the catalogued platform, or a ``https://<id>.com`` fallback."""

        return self.load_all().get(platform_id.strip().lower()) or Platform.fallback(platform_id)


__all__ = ["Platform", "PlatformCatalog", "PlatformLoadError"]
