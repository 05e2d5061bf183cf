"""
Resource directory: the trainers and installers the engine can book.

Loaded from a JSON file shaped like::

    {
      "trainers": [{"email": "...", "name": "...", "languages": ["English"]}],
      "installers": [{"email": "...", "name": "...", "locations": ["Penang"]}]
    }
"""

import json
import logging
from pathlib import Path
from typing import Optional, Union

from pydantic import BaseModel, Field, ValidationError

from src.errors import BookingValidationError
from src.schemas.resource_schema import Resource, ResourceKind
from src.utils import normalize_email

logger = logging.getLogger(__name__)


class _DirectoryEntry(BaseModel):
    email: str
    name: str
    languages: list[str] = Field(default_factory=list)
    locations: list[str] = Field(default_factory=list)
    calendar_id: Optional[str] = None
    is_active: bool = True

    def to_resource(self, kind: ResourceKind) -> Resource:
        return Resource(
            id=self.email,
            name=self.name,
            kind=kind,
            languages=frozenset(self.languages),
            locations=frozenset(self.locations),
            calendar_id=self.calendar_id,
            is_active=self.is_active,
        )


class _DirectoryFile(BaseModel):
    trainers: list[_DirectoryEntry] = Field(default_factory=list)
    installers: list[_DirectoryEntry] = Field(default_factory=list)


class ResourceDirectory:
    """Lookup of bookable resources by kind, email or display name."""

    def __init__(self, resources: list[Resource]) -> None:
        self._resources: dict[str, Resource] = {}
        for resource in resources:
            if resource.id in self._resources:
                raise BookingValidationError(f"Duplicate resource in directory: {resource.id}")
            self._resources[resource.id] = resource

    @classmethod
    def from_file(cls, path: Union[str, Path]) -> "ResourceDirectory":
        """
        Raises:
            FileNotFoundError: The directory file does not exist.
            BookingValidationError: The file is not a valid directory.
        """
        raw = Path(path).read_text(encoding="utf-8")
        try:
            parsed = _DirectoryFile.model_validate(json.loads(raw))
            resources = [e.to_resource(ResourceKind.TRAINER) for e in parsed.trainers]
            resources += [e.to_resource(ResourceKind.INSTALLER) for e in parsed.installers]
        except (ValueError, ValidationError) as exc:
            raise BookingValidationError(f"Invalid resource directory {path}: {exc}") from exc
        logger.info("Loaded %d resources from %s", len(resources), path)
        return cls(resources)

    def all(self) -> list[Resource]:
        return list(self._resources.values())

    def by_kind(self, kind: ResourceKind, active_only: bool = True) -> list[Resource]:
        return [
            r for r in self._resources.values()
            if r.kind == kind and (r.is_active or not active_only)
        ]

    def get(self, resource_id: str) -> Optional[Resource]:
        return self._resources.get(normalize_email(resource_id))

    def find_by_name(self, name: str, kind: Optional[ResourceKind] = None) -> Optional[Resource]:
        """Case-insensitive display-name lookup, as CRM fields store names."""
        wanted = " ".join(name.split()).lower()
        if not wanted:
            return None
        for resource in self._resources.values():
            if kind is not None and resource.kind != kind:
                continue
            if " ".join(resource.name.split()).lower() == wanted:
                return resource
        return None
