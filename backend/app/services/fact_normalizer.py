"""
fact_normalizer.py — Raw record → canonical Citation.

Records arrive from three eras of the wizard: already-canonical citations
(``cite_type`` present), legacy question/answer pairs keyed by
``questionKey``/``question_key`` and occasional junk written by old clients.
Every record yields exactly one Citation, in input order.
"""
import hashlib
import json
import logging
import re
from typing import Any, Dict, Iterable, List

from app.models.fact_schema import Citation, CiteType, Provenance, utc_now_iso
from app.services.errors import FactValidationError

logger = logging.getLogger("buildunion-normalizer")

# Legacy question key → canonical cite_type
LEGACY_KEY_MAP: Dict[str, str] = {
    "gfa": CiteType.GFA_LOCK.value,
    "gfa_lock": CiteType.GFA_LOCK.value,
    "gross_floor_area": CiteType.GFA_LOCK.value,
    "project_address": CiteType.LOCATION.value,
    "address": CiteType.LOCATION.value,
    "location": CiteType.LOCATION.value,
    "project_name": CiteType.PROJECT_NAME.value,
    "name": CiteType.PROJECT_NAME.value,
    "work_type": CiteType.WORK_TYPE.value,
    "trade": CiteType.TRADE_SELECTION.value,
    "trade_selection": CiteType.TRADE_SELECTION.value,
    "template": CiteType.TEMPLATE_LOCK.value,
    "execution_mode": CiteType.EXECUTION_MODE.value,
    "mode": CiteType.EXECUTION_MODE.value,
    "site_condition": CiteType.SITE_CONDITION.value,
    "demolition_price": CiteType.DEMOLITION_PRICE.value,
    "team_size": CiteType.TEAM_SIZE.value,
    "start_date": CiteType.TIMELINE.value,
    "timeline": CiteType.TIMELINE.value,
    "project_dates": CiteType.TIMELINE.value,
    "end_date": CiteType.END_DATE.value,
    "completion_date": CiteType.END_DATE.value,
    "budget": CiteType.BUDGET.value,
    "total_budget": CiteType.BUDGET.value,
    "materials": CiteType.MATERIAL.value,
    "blueprint": CiteType.BLUEPRINT_UPLOAD.value,
    "site_photo": CiteType.SITE_PHOTO.value,
}

FALLBACK_TYPE = "UNKNOWN"

_KEY_FIELDS = ("question_key", "questionKey", "key", "field")
_NON_TAG_CHARS = re.compile(r"[^A-Z0-9]+")
_PROVENANCES = {p.value for p in Provenance}


def _legacy_key(record: Dict[str, Any]) -> str:
    for field in _KEY_FIELDS:
        raw = record.get(field)
        if isinstance(raw, str) and raw.strip():
            return raw.strip()
    return ""


def _free_form_tag(key: str) -> str:
    """Uppercased free-form type tag: 'roof pitch' → 'ROOF_PITCH'."""
    tag = _NON_TAG_CHARS.sub("_", key.upper()).strip("_")
    return tag or FALLBACK_TYPE


def resolve_cite_type(key: str) -> str:
    """Map a legacy question key to a cite_type; never rejects."""
    if not key:
        return FALLBACK_TYPE
    mapped = LEGACY_KEY_MAP.get(key.lower())
    return mapped if mapped else _free_form_tag(key)


def _stable_id(index: int, record: Any) -> str:
    try:
        payload = json.dumps(record, sort_keys=True, default=str)
    except (TypeError, ValueError):
        payload = repr(record)
    digest = hashlib.sha1(f"{index}:{payload}".encode("utf-8")).hexdigest()[:12]
    return f"legacy-{digest}"


def _display(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, (dict, list)):
        return json.dumps(value, default=str)
    return str(value)


def _passthrough(record: Dict[str, Any], index: int) -> Citation:
    """Already-canonical record: keep every field, fill only what is missing."""
    data = dict(record)
    data.setdefault("id", _stable_id(index, record))
    data["id"] = str(data["id"])
    data["cite_type"] = str(data["cite_type"])
    if not isinstance(data.get("metadata"), dict):
        data["metadata"] = {}
    if "answer" in data and not isinstance(data["answer"], str):
        data["answer"] = _display(data["answer"])
    if data.get("provenance") not in _PROVENANCES:
        data.pop("provenance", None)
    if data.get("timestamp") is not None:
        data["timestamp"] = str(data["timestamp"])
    return Citation.model_validate(data)


def _from_legacy(record: Dict[str, Any], index: int) -> Citation:
    key = _legacy_key(record)
    value = record.get("value", record.get("answer"))
    answer = record.get("answer", value)
    metadata = record.get("metadata") if isinstance(record.get("metadata"), dict) else {}
    return Citation(
        id=str(record.get("id") or _stable_id(index, record)),
        cite_type=resolve_cite_type(key),
        question_key=key,
        answer=_display(answer),
        value=value,
        metadata={**metadata, "legacy_key": key} if key else dict(metadata),
        timestamp=str(record.get("timestamp") or utc_now_iso()),
        provenance=Provenance.LEGACY_MIGRATED,
    )


def _coerced(record: Any, index: int, reason: Exception) -> Citation:
    """Last-resort citation for a record that could not be read as either shape."""
    logger.warning(
        "Malformed fact record coerced",
        extra={"cite_type": FALLBACK_TYPE},
        exc_info=FactValidationError(f"record #{index}: {reason}"),
    )
    key = _legacy_key(record) if isinstance(record, dict) else ""
    declared = record.get("cite_type") if isinstance(record, dict) else None
    raw_value = record.get("value") if isinstance(record, dict) else record
    return Citation(
        id=_stable_id(index, record),
        cite_type=str(declared) if declared else resolve_cite_type(key),
        question_key=key,
        answer=_display(raw_value),
        value=raw_value if isinstance(raw_value, (str, int, float, dict, list)) else _display(raw_value),
        metadata={"coerced": True},
        provenance=Provenance.LEGACY_MIGRATED,
    )


def normalize_record(record: Any, index: int = 0) -> Citation:
    try:
        if not isinstance(record, dict):
            raise FactValidationError(f"expected mapping, got {type(record).__name__}")
        if record.get("cite_type"):
            return _passthrough(record, index)
        return _from_legacy(record, index)
    except Exception as exc:
        return _coerced(record, index, exc)


def normalize_records(records: Iterable[Any]) -> List[Citation]:
    """
    Convert heterogeneous raw records into canonical Citations.

    Total and order-preserving: one Citation out per record in, never raises.
    """
    if records is None:
        return []
    out: List[Citation] = []
    legacy = 0
    for index, record in enumerate(records):
        citation = normalize_record(record, index)
        if citation.provenance == Provenance.LEGACY_MIGRATED:
            legacy += 1
        out.append(citation)
    if legacy:
        logger.info(f"Normalized {len(out)} fact records ({legacy} legacy)")
    return out
