"""
Response normalizer for the meetings API

The upstream is loosely typed: a single record arrives as an object instead of
a one-element list, counts arrive as strings, and timestamps come in several
shapes. normalize() fixes the shape, validates against upstream/schemas.py and
reports drift through the notifier. It never raises for malformed payloads;
ingestion continues with a best-effort result.
"""

import math
import re
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple, Type

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from config import get_logger
from pipeline.protocols import MetricsCollector, NullMetrics
from upstream.schemas import RawMeetingData, RawMeetingRecord, RawSpeechRecord

logger = get_logger(__name__).bind(component="normalizer")

DATE_PREFIX = re.compile(r"^(\d{4}-\d{2}-\d{2})")
INTEGER_STRING = re.compile(r"^[+-]?\d+$")

PAYLOAD_NUMERIC_FIELDS = ("numberOfRecords", "numberOfReturn", "startRecord", "nextRecordPosition")
MEETING_NUMERIC_FIELDS = ("searchObject", "session")
SPEECH_NUMERIC_FIELDS = ("speechOrder", "startPage")
SPEECH_DATE_FIELDS = ("createTime", "updateTime")

# Alternate timestamp layouts seen in older transcripts
FALLBACK_DATE_FORMATS = ("%Y/%m/%d %H:%M:%S", "%Y/%m/%d", "%Y%m%d")


def as_list(value: Any) -> List[Any]:
    """Absent -> [], singular -> [value], list -> list"""
    if value is None or value == "" or value == {}:
        return []
    if isinstance(value, list):
        return value
    return [value]


def coerce_number(value: Any) -> Any:
    """Coerce numeric strings and integral floats to int; leave everything else alone"""
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        text = value.strip()
        if INTEGER_STRING.match(text):
            return int(text)
        return value
    if isinstance(value, float) and math.isfinite(value) and value.is_integer():
        return int(value)
    return value


def normalize_date_only(value: Any, field: str = "") -> Optional[Any]:
    """Reduce a timestamp to its YYYY-MM-DD prefix.

    Accepts 'YYYY-MM-DDTHH:MM:SSZ', 'YYYY-MM-DD HH:MM:SS', a few slash layouts
    and epoch milliseconds. Unparsable strings pass through unchanged.
    """
    if value is None:
        return None
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        if not math.isfinite(value):
            return value
        try:
            return datetime.fromtimestamp(value / 1000.0, tz=timezone.utc).date().isoformat()
        except (OverflowError, OSError, ValueError):
            logger.warning("unparsable timestamp", field=field, value=value)
            return value
    if not isinstance(value, str):
        return value

    text = value.strip()
    match = DATE_PREFIX.match(text)
    if match:
        return match.group(1)

    for fmt in FALLBACK_DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt).date().isoformat()
        except ValueError:
            continue

    logger.warning("unparsable timestamp", field=field, value=text)
    return text


def _normalize_speech(record: Any) -> Any:
    if not isinstance(record, dict):
        return record
    normalized = dict(record)
    for field in SPEECH_NUMERIC_FIELDS:
        if field in normalized:
            normalized[field] = coerce_number(normalized[field])
    for field in SPEECH_DATE_FIELDS:
        normalized[field] = normalize_date_only(normalized.get(field), field)
    return normalized


def _normalize_meeting(record: Any) -> Any:
    if not isinstance(record, dict):
        return record
    normalized = dict(record)
    for field in MEETING_NUMERIC_FIELDS:
        if field in normalized:
            normalized[field] = coerce_number(normalized[field])
    normalized["speechRecord"] = [_normalize_speech(s) for s in as_list(normalized.get("speechRecord"))]
    return normalized


def normalize_payload_shape(payload: Any) -> Any:
    """Apply every shape fix; non-object payloads are returned untouched"""
    if not isinstance(payload, dict):
        return payload
    normalized = dict(payload)
    for field in PAYLOAD_NUMERIC_FIELDS:
        if field in normalized:
            normalized[field] = coerce_number(normalized[field])
    normalized["meetingRecord"] = [_normalize_meeting(m) for m in as_list(normalized.get("meetingRecord"))]
    return normalized


def format_error_path(loc: Tuple[Any, ...]) -> str:
    """('meetingRecord', 0, 'speechRecord', 2, 'speechOrder') -> meetingRecord[0].speechRecord[2].speechOrder"""
    path = ""
    for part in loc:
        if isinstance(part, int):
            path += f"[{part}]"
        elif path:
            path += f".{part}"
        else:
            path = str(part)
    return path


def collect_issues(error: PydanticValidationError) -> List[Dict[str, str]]:
    return [
        {"path": format_error_path(tuple(err.get("loc", ()))), "message": err.get("msg", "invalid")}
        for err in error.errors()
    ]


def aggregate_issues(issues: List[Dict[str, str]]) -> str:
    return "; ".join(
        f"{issue['path']}: {issue['message']}" if issue["path"] else issue["message"]
        for issue in issues
    )


def _construct(model: Type[BaseModel], data: Dict[str, Any]) -> BaseModel:
    """Build a model without validation, reading upstream (alias) keys"""
    values: Dict[str, Any] = {}
    for name, field in model.model_fields.items():
        key = field.alias or name
        if key in data:
            values[name] = data[key]
        elif not field.is_required():
            values[name] = field.get_default(call_default_factory=True)
        else:
            values[name] = None
    return model.model_construct(**values)


def _best_effort(normalized: Dict[str, Any]) -> RawMeetingData:
    meetings = []
    for index, record in enumerate(normalized.get("meetingRecord", [])):
        if not isinstance(record, dict):
            logger.warning("dropping non-object meeting record", index=index, kind=type(record).__name__)
            continue
        speeches = [
            _construct(RawSpeechRecord, s) for s in record.get("speechRecord", []) if isinstance(s, dict)
        ]
        meeting = _construct(RawMeetingRecord, {**record, "speechRecord": speeches})
        meetings.append(meeting)

    top = {}
    for field, default in (
        ("numberOfRecords", len(meetings)),
        ("numberOfReturn", len(meetings)),
        ("startRecord", 1),
        ("nextRecordPosition", None),
    ):
        value = normalized.get(field)
        top[field] = value if isinstance(value, int) and not isinstance(value, bool) else default

    return _construct(RawMeetingData, {**top, "meetingRecord": meetings})


class ResponseNormalizer:
    """Normalize and validate meetings API payloads

    Args:
        notifier: Collaborator with async notify_schema_violation(message, issues)
        metrics: Optional metrics collector
    """

    def __init__(self, notifier=None, metrics: Optional[MetricsCollector] = None):
        self.notifier = notifier
        self.metrics = metrics or NullMetrics()

    async def normalize(self, payload: Any) -> RawMeetingData:
        normalized = normalize_payload_shape(payload)

        if not isinstance(normalized, dict):
            issues = [{"path": "", "message": f"Expected object payload, got {type(payload).__name__}"}]
            await self._report(issues)
            return RawMeetingData(numberOfRecords=0)

        try:
            return RawMeetingData.model_validate(normalized)
        except PydanticValidationError as e:
            issues = collect_issues(e)
            await self._report(issues)
            return _best_effort(normalized)

    async def _report(self, issues: List[Dict[str, str]]):
        message = aggregate_issues(issues)
        logger.warning("payload validation failed", issue_count=len(issues), issues=message[:500])
        self.metrics.record_error("normalizer", "SchemaViolation")
        if self.notifier is None:
            return
        await self.notifier.notify_schema_violation(message, issues)
