from dataclasses import dataclass, field
from typing import Protocol


@dataclass(frozen=True)
class ImporterSettings:
    """Engine options for a single transform call.

    The WASM asset path is fixed when the importer starts and is not part of
    the per-call settings.
    """

    coordinate_to_origin: bool = True
    include_unique_attributes: bool = True
    include_relation_names: bool = True
    include_properties: bool = True
    excluded_categories: frozenset[int] = field(default_factory=frozenset)

    def to_wire(self) -> dict[str, object]:
        return {
            "coordinateToOrigin": self.coordinate_to_origin,
            "includeUniqueAttributes": self.include_unique_attributes,
            "includeRelationNames": self.include_relation_names,
            "includeProperties": self.include_properties,
            "excludedCategories": sorted(self.excluded_categories),
        }


class ImporterGateway(Protocol):
    async def start(self) -> None:
        """Bring the engine up. Raises if it cannot be constructed."""

    async def process(self, data: bytes, settings: ImporterSettings) -> bytes:
        """Transform raw IFC bytes into a Fragments buffer using `settings`.

        Settings are passed on every call; implementations must not keep
        per-call options around between calls.
        """

    async def close(self) -> None:
        ...
