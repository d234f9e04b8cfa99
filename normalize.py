"""
Record normalization for documents arriving from the store.

Stored documents are written by many clients over time, so the same field can
show up as a native datetime, an ISO string, epoch numbers or a Firestore-style
``{seconds, nanoseconds}`` map, and amounts as numbers or numeric strings.
Everything is reduced here to one canonical shape before it reaches the
visibility filter.
"""
import logging
import math
from datetime import date, datetime, timezone
from typing import Any, Dict, List, Mapping, Optional

from bson.decimal128 import Decimal128
from pydantic import ValidationError

from errors import MalformedRecord
from schemas import AppSettings, PermissionRule, Task, User

logger = logging.getLogger("tasktrack")

DATE_FIELDS = ("receivedDate", "entryDate", "dueDate", "createdAt", "updatedAt")
AMOUNT_FIELDS = ("initialDemand", "officialSettlement", "motivation")
CURRENCY_FIELDS = ("initialDemandCurrency", "officialSettlementCurrency", "motivationCurrency")
TEXT_FIELDS = ("creatorId", "description", "label", "department", "sender", "senderLocation", "receiver", "receiverLocation")
DEFAULT_CURRENCY = "USD"

# Epoch numbers above this are taken to be milliseconds.
_MS_THRESHOLD = 1e11


def to_instant(value: Any) -> Optional[datetime]:
    """Return a timezone-aware UTC datetime, or None when the value is absent or unreadable."""
    if value is None or value == "" or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)
    if isinstance(value, (int, float)):
        if math.isnan(value) or math.isinf(value):
            return None
        seconds = value / 1000.0 if abs(value) > _MS_THRESHOLD else float(value)
        try:
            return datetime.fromtimestamp(seconds, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    if isinstance(value, Mapping):
        seconds = value.get("seconds", value.get("_seconds"))
        if not isinstance(seconds, (int, float)) or isinstance(seconds, bool):
            return None
        nanos = value.get("nanoseconds", value.get("_nanoseconds")) or 0
        try:
            return datetime.fromtimestamp(seconds + nanos / 1e9, tz=timezone.utc)
        except (OverflowError, OSError, ValueError, TypeError):
            return None
    if isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            logger.debug("Unparseable date %r treated as absent", value)
            return None
        return to_instant(parsed)
    return None


def to_amount(value: Any) -> float:
    """Coerce a financial amount to float; missing or invalid becomes 0.0."""
    if value is None or isinstance(value, bool):
        return 0.0
    if isinstance(value, Decimal128):
        value = value.to_decimal()
    if isinstance(value, str):
        value = value.strip()
        if not value:
            return 0.0
    try:
        num = float(value)
    except (TypeError, ValueError):
        return 0.0
    if math.isnan(num) or math.isinf(num):
        return 0.0
    return num


def normalize_user(doc_id: str, data: Mapping[str, Any]) -> User:
    record = {k: v for k, v in data.items() if k not in ("_id", "password")}
    record["id"] = str(doc_id)
    return User.model_validate(record)


def _text(value: Any, default: Optional[str] = None) -> Optional[str]:
    """Scalars become strings; absent, empty and container values become ``default``."""
    if value is None or isinstance(value, (Mapping, list, tuple, set)):
        return default
    text = str(value)
    return text if text else default


def _items(value: Any) -> List[Any]:
    return list(value) if isinstance(value, (list, tuple)) else []


def _user_record(value: Any) -> Optional[Dict[str, Any]]:
    """
    Embedded user snapshot with every field readable.

    A missing or null id becomes "", which matches no signed-in user.
    """
    if not isinstance(value, Mapping):
        return None
    item = {k: v for k, v in value.items() if k != "password"}
    item["id"] = _text(item.get("id"), "")
    for key in ("name", "email", "role", "avatarUrl", "department"):
        item[key] = _text(item.get(key))
    return item


def _normalize_activity(doc_id: str, entries: Any) -> List[Dict[str, Any]]:
    out = []
    for entry in _items(entries):
        if not isinstance(entry, Mapping) or not _text(entry.get("id")) or not _text(entry.get("action")):
            logger.warning("Dropping unreadable activity entry on task %s", doc_id)
            continue
        out.append(
            {
                "id": _text(entry["id"]),
                "action": _text(entry["action"]),
                "details": _text(entry.get("details")),
                "user": _user_record(entry.get("user")) or {},
                "timestamp": to_instant(entry.get("timestamp")),
            }
        )
    return out


def _normalize_files(entries: Any) -> List[Dict[str, Any]]:
    out = []
    for f in _items(entries):
        if not isinstance(f, Mapping) or not _text(f.get("name")) or not _text(f.get("url")):
            continue
        size = f.get("size")
        out.append(
            {
                "name": _text(f["name"]),
                "url": _text(f["url"]),
                "size": int(to_amount(size)) if size is not None else None,
                "type": _text(f.get("type")),
            }
        )
    return out


def normalize_task(doc_id: str, data: Any) -> Task:
    """
    Build a Task from a raw stored document.

    Missing dates become None, missing amounts 0.0 and odd scalar values
    strings, rather than errors. Unreadable embedded users, files and
    activity entries are cleaned or dropped one by one. Raises
    MalformedRecord only when no Task can be built at all.
    """
    if not isinstance(data, Mapping):
        raise MalformedRecord(str(doc_id), "document is not a mapping")

    record: Dict[str, Any] = {k: v for k, v in data.items() if k != "_id"}
    record["id"] = str(doc_id)

    for field in DATE_FIELDS:
        record[field] = to_instant(record.get(field))
    if record["createdAt"] is None:
        record["createdAt"] = record["entryDate"]

    for field in AMOUNT_FIELDS:
        record[field] = to_amount(record.get(field))
    for field in CURRENCY_FIELDS:
        record[field] = _text(record.get(field), DEFAULT_CURRENCY)

    record["title"] = _text(record.get("title"), "")
    record["status"] = _text(record.get("status"), "Pending")
    record["priority"] = _text(record.get("priority"), "Medium")
    record["period"] = _text(record.get("period"), "")
    for field in TEXT_FIELDS:
        record[field] = _text(record.get(field))

    record["assignee"] = _user_record(record.get("assignee"))
    record["viewers"] = [v for v in map(_user_record, _items(record.get("viewers"))) if v is not None]
    record["files"] = _normalize_files(record.get("files"))
    record["activity"] = _normalize_activity(record["id"], record.get("activity"))

    try:
        return Task.model_validate(record)
    except ValidationError as e:
        raise MalformedRecord(record["id"], str(e)) from e


def normalize_settings(doc_id: Optional[str], data: Optional[Mapping[str, Any]]) -> AppSettings:
    """Settings document -> AppSettings. A missing document yields empty, safe defaults."""
    if not data:
        return AppSettings(id=doc_id, customFields={}, rules=[])

    rules: List[PermissionRule] = []
    seen = set()
    for raw in data.get("rules") or []:
        try:
            rule = PermissionRule.model_validate(raw)
        except ValidationError:
            logger.warning("Dropping malformed permission rule: %r", raw)
            continue
        # one rule per permission name; the first one stored wins
        if rule.permission in seen:
            continue
        seen.add(rule.permission)
        rules.append(rule)

    custom_fields: Dict[str, List[str]] = {}
    raw_fields = data.get("customFields") or {}
    if isinstance(raw_fields, Mapping):
        for name, options in raw_fields.items():
            if isinstance(options, (list, tuple)):
                custom_fields[str(name)] = [str(o) for o in options]

    return AppSettings(id=doc_id, customFields=custom_fields, rules=rules)
