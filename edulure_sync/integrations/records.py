"""Record shapes and payload helpers shared by the CRM sync jobs."""
import hashlib
import json
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

HUBSPOT = "hubspot"
SALESFORCE = "salesforce"

LEAD_STATUS_BY_PROJECT_STATUS = {
    "draft": "Open - Not Contacted",
    "in_review": "Working - Contacted",
    "review": "Working - Contacted",
    "approved": "Working - Qualified",
    "published": "Closed - Converted",
    "archived": "Closed - Not Converted",
}
DEFAULT_LEAD_STATUS = "Open - Not Contacted"


@dataclass
class OutboundRecord:
    """A platform record prepared for upsert into a CRM."""
    entity_type: str
    entity_id: str
    payload: Dict[str, Any]
    idempotency_key: str


@dataclass
class PushResult:
    record: OutboundRecord
    succeeded: bool
    external_id: Optional[str] = None
    message: Optional[str] = None


@dataclass
class PushSummary:
    succeeded: int = 0
    failed: int = 0
    results: List[PushResult] = field(default_factory=list)

    def add(self, result: PushResult):
        self.results.append(result)
        if result.succeeded:
            self.succeeded += 1
        else:
            self.failed += 1


@dataclass
class InboundRecord:
    """A remote record observed during the pull phase of a sync."""
    entity_type: str
    entity_id: Optional[str]
    external_id: Optional[str]
    payload: Dict[str, Any]


@dataclass
class CollectedRecords:
    records: List[OutboundRecord]
    skipped: int
    summary: Dict[str, Any]


def stable_json(value) -> str:
    return json.dumps(value, separators=(",", ":"), default=str)


def build_hash(parts: Iterable[Any]) -> str:
    """sha1 over the concatenation of the non-empty parts."""
    digest = hashlib.sha1()
    for part in parts:
        if part is None or part == "" or part is False:
            continue
        digest.update(str(part).encode("utf-8"))
    return digest.hexdigest()


def compact(mapping: Dict[str, Any]) -> Dict[str, Any]:
    return {key: value for key, value in mapping.items() if value is not None and value != ""}


def truncate(value: Optional[str], limit: int) -> str:
    if not value:
        return ""
    return value if len(value) <= limit else value[:limit]


def map_project_status_to_lead_status(status: Optional[str]) -> str:
    return LEAD_STATUS_BY_PROJECT_STATUS.get((status or "").lower(), DEFAULT_LEAD_STATUS)
