from dataclasses import dataclass
from datetime import datetime
from typing import Optional


@dataclass
class AuditEntry:
    timestamp: datetime
    action: str              # "generate", "redistribute", "swap", "remove_category", "remove_region", "activate", "deactivate", "delete"
    distribution_id: str
    field_changed: str
    old_value: str
    new_value: str
    rationale: str = ""
    structure_id: Optional[str] = None
