from dataclasses import dataclass
from typing import Hashable, Optional


@dataclass(frozen=True)
class Structure:
    structure_id: Hashable
    category: str                 # size, e.g. "4x12"
    region: str = ""              # municipality
    locality: str = ""            # city
    tag: str = ""                 # ad type
    lat: Optional[float] = None
    lng: Optional[float] = None

    @property
    def has_coordinates(self) -> bool:
        return self.lat is not None and self.lng is not None
