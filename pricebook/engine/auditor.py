"""Append-only change log for price and rate timelines."""

import json
from dataclasses import dataclass
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Callable, Dict, Mapping, Optional

from loguru import logger

from pricebook.db import db
from pricebook.db.models import ChangeLogEntry, ChangeType, SubjectType
from pricebook.errors import ValidationError
from pricebook.utils.helpers import (
    format_decimal,
    parse_decimal,
    sanitize_dict,
    sanitize_log_string,
    utcnow,
)

PERCENT_STEP = Decimal("0.01")


@dataclass
class FieldChange:
    old: Optional[Decimal]
    new: Optional[Decimal]
    amount: Optional[Decimal]
    percentage: Optional[Decimal]
    direction: Optional[str]
    label: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "old": format_decimal(self.old),
            "new": format_decimal(self.new),
            "amount": format_decimal(self.amount),
            "percentage": str(self.percentage) if self.percentage is not None else None,
            "direction": self.direction,
            "label": self.label,
        }


def compare(old: Optional[Decimal], new: Optional[Decimal]) -> FieldChange:
    """Summarise the move of one numeric field from ``old`` to ``new``."""
    if old is None and new is None:
        return FieldChange(None, None, None, None, None, "unchanged")
    if old is None:
        return FieldChange(None, new, None, None, None, "new")
    if new is None:
        return FieldChange(old, None, None, None, None, "removed")

    amount = new - old
    percentage = None
    if old != 0:
        percentage = (amount / old * 100).quantize(PERCENT_STEP, rounding=ROUND_HALF_UP)
    if amount > 0:
        direction = "up"
    elif amount < 0:
        direction = "down"
    else:
        direction = "same"
    label = "unchanged" if amount == 0 else "changed"
    return FieldChange(old, new, amount, percentage, direction, label)


def _numeric_values(value) -> Dict[str, Optional[Decimal]]:
    """Accept a record, a record snapshot or a plain ``{field: number}`` map."""
    if value is None:
        return {}
    if hasattr(value, "values") and not isinstance(value, Mapping):
        return dict(value.values())
    if "values" in value and isinstance(value["values"], Mapping):
        value = value["values"]
    return {field: parse_decimal(raw) for field, raw in value.items()}


class ChangeAuditor:
    def __init__(self, clock: Callable[[], datetime] = utcnow):
        self.clock = clock

    @staticmethod
    def diff(old, new) -> Dict[str, FieldChange]:
        old_values = _numeric_values(old)
        new_values = _numeric_values(new)
        changes = {}
        for field in sorted(set(old_values) | set(new_values)):
            before, after = old_values.get(field), new_values.get(field)
            if before is None and after is None:
                continue
            changes[field] = compare(before, after)
        return changes

    def record_change(
        self,
        subject_type: SubjectType,
        subject_id: int,
        change_type: ChangeType,
        old: Optional[Dict[str, Any]],
        new: Dict[str, Any],
        actor: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> ChangeLogEntry:
        """Append one entry describing ``old -> new``; the caller commits."""
        changes = self.diff(old, new)
        entry = ChangeLogEntry(
            subject_type=subject_type,
            subject_id=subject_id,
            subject_key=new.get("subject_key") or (old or {}).get("subject_key"),
            product_id=new.get("product_id"),
            change_type=change_type,
            old_value=json.dumps(old, sort_keys=True) if old is not None else None,
            new_value=json.dumps(new, sort_keys=True),
            diff=json.dumps({field: change.to_dict() for field, change in changes.items()}, sort_keys=True),
            fields=_fields_string(subject_type, new, changes),
            change_reason=sanitize_log_string(reason),
            changed_by=sanitize_log_string(actor),
            changed_at=self.clock(),
        )
        db.session.add(entry)
        db.session.flush()
        logger.debug(
            f"Change log {entry.id}: {change_type.value} {subject_type.value} {subject_id} "
            f"{sanitize_dict({k: c.label for k, c in changes.items()})}"
        )
        return entry

    def list_changes(self, filters: Optional[Dict[str, Any]] = None, page: int = 1, size: int = 20):
        """Entries matching ``filters``, newest first, as a Flask-SQLAlchemy page.

        Recognised filters: subject_type, subject_id, product_id, price_type,
        currency, change_type, changed_from, changed_to (half-open), actor.
        """
        filters = filters or {}
        if filters.get("subject_id") is not None and filters.get("subject_type") is None:
            # price and rate records are numbered independently
            raise ValidationError({"subject_type": "required when subject_id is given"})
        query = ChangeLogEntry.query

        if filters.get("subject_type") is not None:
            query = query.filter(ChangeLogEntry.subject_type == filters["subject_type"])
        if filters.get("subject_id") is not None:
            query = query.filter(ChangeLogEntry.subject_id == filters["subject_id"])
        if filters.get("product_id"):
            query = query.filter(ChangeLogEntry.product_id == filters["product_id"])
        if filters.get("change_type") is not None:
            query = query.filter(ChangeLogEntry.change_type == filters["change_type"])
        if filters.get("actor"):
            query = query.filter(ChangeLogEntry.changed_by == filters["actor"])
        if filters.get("changed_from") is not None:
            query = query.filter(ChangeLogEntry.changed_at >= filters["changed_from"])
        if filters.get("changed_to") is not None:
            query = query.filter(ChangeLogEntry.changed_at < filters["changed_to"])

        # fields is stored as ",direct:IDR,list:CNY," so both ends are anchored
        if filters.get("price_type") is not None:
            query = query.filter(ChangeLogEntry.fields.like(f"%,{_value(filters['price_type'])}:%"))
        if filters.get("currency") is not None:
            query = query.filter(ChangeLogEntry.fields.like(f"%:{_value(filters['currency'])},%"))

        return query.order_by(ChangeLogEntry.changed_at.desc(), ChangeLogEntry.id.desc()).paginate(
            page=page, per_page=size, error_out=False
        )


def _value(member) -> str:
    return getattr(member, "value", member)


def _fields_string(subject_type: SubjectType, snapshot: Dict[str, Any], changes: Dict[str, FieldChange]) -> str:
    if subject_type is SubjectType.RATE:
        touched = [f"rate:{snapshot.get('from_currency')}", f"rate:{snapshot.get('to_currency')}"]
    else:
        touched = [field for field in changes if ":" in field]
    return "," + "".join(f"{field}," for field in touched)
