"""Persistence and range invariants for effective-dated records.

One ``TemporalRecordStore`` serves one record model (``PriceRecord`` or
``ExchangeRateRecord``). Writes only flush; committing is the caller's job so
that the record and its audit entry land in the same transaction.
"""

from datetime import datetime, timedelta
from decimal import Decimal
from typing import Callable, Dict, List, Optional

from loguru import logger
from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm.exc import StaleDataError

from pricebook.db import db
from pricebook.db.models import (
    PRICE_CURRENCIES,
    PriceRecord,
    SubjectLock,
)
from pricebook.engine.resolver import RecordStatus, pick_current, ranges_overlap, resolve_status
from pricebook.errors import ConflictError, InvalidStateError, RecordNotFoundError, ValidationError
from pricebook.utils.helpers import isoformat, sanitize_log_string, utcnow


class TemporalRecordStore:
    def __init__(
        self,
        model,
        clock: Callable[[], datetime] = utcnow,
        backdate_grace: timedelta = timedelta(minutes=5),
    ):
        self.model = model
        self.clock = clock
        # how far before "now" a new record may still start
        self.backdate_grace = backdate_grace

    @property
    def subject_type(self):
        return self.model.subject_type

    # --- validation ---

    def validate(self, record) -> None:
        errors: Dict[str, str] = {}
        if record.effective_from is None:
            errors["effective_from"] = "required"
        elif record.effective_to is not None and record.effective_to <= record.effective_from:
            errors["effective_to"] = "must be later than effective_from"

        if self.model is PriceRecord:
            errors.update(_price_errors(record))
        else:
            errors.update(_rate_errors(record))

        if errors:
            raise ValidationError(errors)

    # --- reads ---

    def get(self, record_id: int):
        record = db.session.get(self.model, record_id)
        if record is None:
            raise RecordNotFoundError(
                f"{self.subject_type.value} record {record_id} not found",
                {"id": record_id},
            )
        return record

    def _live(self, subject):
        return self.model.query.filter(*subject.criteria()).filter(self.model.cancelled_at.is_(None))

    def query_current(self, subject, as_of: Optional[datetime] = None):
        as_of = as_of or self.clock()
        candidates = (
            self._live(subject)
            .filter(self.model.effective_from <= as_of)
            .filter(or_(self.model.effective_to.is_(None), self.model.effective_to > as_of))
            .order_by(self.model.effective_from.desc())
            .all()
        )
        return pick_current(candidates, as_of)

    def list_current(self, as_of: Optional[datetime] = None, criteria=None) -> List:
        """Current record of every subject matching ``criteria``."""
        as_of = as_of or self.clock()
        query = (
            self.model.query.filter(self.model.cancelled_at.is_(None))
            .filter(self.model.effective_from <= as_of)
            .filter(or_(self.model.effective_to.is_(None), self.model.effective_to > as_of))
        )
        if criteria:
            query = query.filter(*criteria)

        by_subject: Dict[str, List] = {}
        for record in query.order_by(self.model.id).all():
            by_subject.setdefault(record.subject.key, []).append(record)
        current = [pick_current(records, as_of) for records in by_subject.values()]
        return sorted(current, key=lambda r: r.subject.key)

    def query_upcoming(self, subject=None, horizon: timedelta = timedelta(hours=168), criteria=None) -> List:
        now = self.clock()
        query = (
            self.model.query.filter(self.model.cancelled_at.is_(None))
            .filter(self.model.effective_from > now)
            .filter(self.model.effective_from <= now + horizon)
        )
        if subject is not None:
            query = query.filter(*subject.criteria())
        if criteria:
            query = query.filter(*criteria)
        return query.order_by(self.model.effective_from.asc(), self.model.id.asc()).all()

    def query_history(self, subject, page: int = 1, size: int = 20, criteria=None):
        """Every version of the subject, cancelled ones included, newest first."""
        query = self.model.query.filter(*subject.criteria())
        if criteria:
            query = query.filter(*criteria)
        return (
            query.order_by(self.model.effective_from.desc(), self.model.id.desc())
            .paginate(page=page, per_page=size, error_out=False)
        )

    def previous_version(self, subject, effective_from: datetime):
        """Latest live record starting before ``effective_from``."""
        return (
            self._live(subject)
            .filter(self.model.effective_from < effective_from)
            .order_by(self.model.effective_from.desc())
            .first()
        )

    # --- writes ---

    def create(self, record) -> int:
        """Validate, check overlaps under the subject lock and flush ``record``.

        Elapsed time is never rewritten: ``effective_from`` may trail ``now``
        by at most ``backdate_grace``. An open-ended predecessor that started
        earlier is closed at the new ``effective_from``; any other overlap is
        a conflict.
        """
        self.validate(record)
        now = self.clock()
        if record.effective_from < now - self.backdate_grace:
            raise ConflictError(
                f"Effective from {isoformat(record.effective_from)} is in the past; "
                f"elapsed time for {record.subject.key} cannot be rewritten",
                {"effective_from": isoformat(record.effective_from), "now": isoformat(now)},
            )
        record.created_at = record.created_at or now
        subject = record.subject
        self._lock(subject, now)

        existing = self._live(subject).with_for_update().all()
        predecessor = None
        for other in existing:
            if not ranges_overlap(other.effective_from, other.effective_to, record.effective_from, record.effective_to):
                continue
            if other.effective_to is None and other.effective_from < record.effective_from:
                predecessor = other
                continue
            raise ConflictError(
                f"Effective range overlaps record {other.id} for {subject.key}",
                {
                    "conflicting_id": other.id,
                    "effective_from": isoformat(other.effective_from),
                    "effective_to": isoformat(other.effective_to),
                },
            )

        if predecessor is not None:
            predecessor.effective_to = record.effective_from
            logger.debug(f"Record {predecessor.id} ({subject.key}) closed at {record.effective_from}")
            record.supersedes_id = predecessor.id

        db.session.add(record)
        self._flush(subject)
        return record.id

    def cancel(self, record_id: int, actor: Optional[str] = None):
        now = self.clock()
        record = self.get(record_id)
        status = resolve_status(record, now)
        if status is not RecordStatus.UPCOMING:
            raise InvalidStateError(
                f"Only upcoming records can be cancelled; record {record_id} is {status.value}",
                {"id": record_id, "status": status.value},
            )

        self._lock(record.subject, now)
        record.cancelled_at = now
        record.cancelled_by = sanitize_log_string(actor)

        predecessor = self._closed_predecessor(record)
        if predecessor is not None:
            following = (
                self._live(record.subject)
                .filter(self.model.id != record.id)
                .filter(self.model.effective_from >= record.effective_from)
                .order_by(self.model.effective_from.asc())
                .first()
            )
            predecessor.effective_to = following.effective_from if following is not None else None
            logger.debug(f"Record {predecessor.id} reopened to {predecessor.effective_to}")

        self._flush(record.subject)
        return record

    def _closed_predecessor(self, record):
        """Live record that ``record`` closed, skipping versions cancelled since."""
        predecessor_id = record.supersedes_id
        while predecessor_id is not None:
            predecessor = db.session.get(self.model, predecessor_id)
            if predecessor is None:
                return None
            if not predecessor.is_cancelled:
                return predecessor if predecessor.effective_to == record.effective_from else None
            predecessor_id = predecessor.supersedes_id
        return None

    def approve(self, record_id: int, actor: Optional[str] = None):
        """Mark a record as signed off. Dates and values stay untouched."""
        now = self.clock()
        record = self.get(record_id)
        if record.is_cancelled:
            raise InvalidStateError(
                f"Record {record_id} is cancelled and cannot be approved",
                {"id": record_id, "status": RecordStatus.CANCELLED.value},
            )
        if record.is_approved:
            raise InvalidStateError(
                f"Record {record_id} was already approved by {record.approved_by or 'unknown'}",
                {"id": record_id, "approved_at": isoformat(record.approved_at)},
            )

        self._lock(record.subject, now)
        record.is_approved = True
        record.approved_by = sanitize_log_string(actor)
        record.approved_at = now
        self._flush(record.subject)
        return record

    # --- concurrency ---

    def _lock(self, subject, now: datetime) -> None:
        """Bump the subject's version row so concurrent writers collide."""
        lock = (
            SubjectLock.query.filter_by(subject_type=self.subject_type, subject_key=subject.key)
            .with_for_update()
            .first()
        )
        if lock is None:
            lock = SubjectLock(subject_type=self.subject_type, subject_key=subject.key, write_count=0)
            db.session.add(lock)
        lock.write_count = (lock.write_count or 0) + 1
        lock.updated_at = now
        self._flush(subject)

    def _flush(self, subject) -> None:
        try:
            db.session.flush()
        except (StaleDataError, IntegrityError) as exc:
            raise ConflictError(
                f"Concurrent write on {subject.key}; re-read and retry",
                {"subject_key": subject.key},
            ) from exc


def _price_errors(record) -> Dict[str, str]:
    errors: Dict[str, str] = {}
    if not record.product_id:
        errors["product_id"] = "required"
    if record.exchange_rate is not None and Decimal(record.exchange_rate) <= 0:
        errors["exchange_rate"] = "must be greater than 0"

    defined = 0
    for amount in record.amounts:
        field = amount.field
        if amount.currency not in PRICE_CURRENCIES:
            errors[field] = f"currency must be one of {', '.join(c.value for c in PRICE_CURRENCIES)}"
        elif amount.amount is not None:
            if Decimal(amount.amount) < 0:
                errors[field] = "must not be negative"
            defined += 1
    if defined == 0:
        errors["prices"] = "at least one price must be set"
    return errors


def _rate_errors(record) -> Dict[str, str]:
    errors: Dict[str, str] = {}
    if record.from_currency is None:
        errors["from_currency"] = "required"
    if record.to_currency is None:
        errors["to_currency"] = "required"
    elif record.from_currency == record.to_currency:
        errors["to_currency"] = "must differ from from_currency"
    if record.rate is None:
        errors["rate"] = "required"
    elif Decimal(record.rate) <= 0:
        errors["rate"] = "must be greater than 0"
    return errors

