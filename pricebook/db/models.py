import json
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, ClassVar, Dict, Optional, Tuple

# The SQLAlchemy instance lives in the 'pricebook.db' package; import it from
# there so every model shares the same metadata.
from pricebook.db import db
from pricebook.errors import InvalidStateError
from pricebook.utils.helpers import format_decimal, isoformat
from sqlalchemy import Enum as SqlEnum
from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    and_,
    event,
)
from sqlalchemy.orm import declared_attr


# --- Enums ---


class PriceType(Enum):
    CHANNEL = "channel"
    DIRECT = "direct"
    LIST = "list"


class Currency(Enum):
    IDR = "IDR"
    CNY = "CNY"
    USD = "USD"
    EUR = "EUR"


# Price amounts are only kept in these currencies; rates may use any Currency.
PRICE_CURRENCIES = (Currency.IDR, Currency.CNY)


class RecordSource(Enum):
    MANUAL = "manual"
    IMPORT = "import"


class SubjectType(Enum):
    PRICE = "price"
    RATE = "rate"


class ChangeType(Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    ACTIVATE = "activate"
    DEACTIVATE = "deactivate"
    APPROVE = "approve"


# --- Subject keys ---


@dataclass(frozen=True)
class PriceSubject:
    """Product (optionally scoped to an organization) owning a price timeline."""

    product_id: str
    organization_id: Optional[str] = None

    subject_type: ClassVar[SubjectType] = SubjectType.PRICE

    @property
    def key(self) -> str:
        return f"{self.product_id}@{self.organization_id or '*'}"

    def criteria(self):
        if self.organization_id is None:
            org_clause = PriceRecord.organization_id.is_(None)
        else:
            org_clause = PriceRecord.organization_id == self.organization_id
        return [PriceRecord.product_id == self.product_id, org_clause]


@dataclass(frozen=True)
class RateSubject:
    """Directed currency pair owning an exchange-rate timeline."""

    from_currency: Currency
    to_currency: Currency

    subject_type: ClassVar[SubjectType] = SubjectType.RATE

    @property
    def key(self) -> str:
        return f"{self.from_currency.value}>{self.to_currency.value}"

    def criteria(self):
        return [
            ExchangeRateRecord.from_currency == self.from_currency,
            ExchangeRateRecord.to_currency == self.to_currency,
        ]


# --- Versioned records ---


class TemporalMixin:
    """Columns shared by every effective-dated record."""

    effective_from = Column(DateTime, nullable=False, index=True)
    effective_to = Column(DateTime, nullable=True)
    source_reference = Column(String(128), nullable=True)
    change_reason = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False)
    cancelled_at = Column(DateTime, nullable=True)
    cancelled_by = Column(String(128), nullable=True)
    # sign-off only; resolution never looks at it
    is_approved = Column(Boolean, nullable=False, default=False)
    approved_by = Column(String(128), nullable=True)
    approved_at = Column(DateTime, nullable=True)

    # one enum type per table so migrations never create the same type twice
    @declared_attr
    def source(cls):
        return Column(
            SqlEnum(RecordSource, name=f"{cls.__tablename__}_source_enum"),
            default=RecordSource.MANUAL,
            nullable=False,
        )

    @property
    def is_cancelled(self) -> bool:
        return self.cancelled_at is not None

    def _temporal_dict(self) -> Dict[str, Any]:
        return {
            "effective_from": isoformat(self.effective_from),
            "effective_to": isoformat(self.effective_to),
            "source": self.source.value if self.source else None,
            "source_reference": self.source_reference,
            "change_reason": self.change_reason,
            "created_at": isoformat(self.created_at),
            "supersedes_id": self.supersedes_id,
            "cancelled_at": isoformat(self.cancelled_at),
            "cancelled_by": self.cancelled_by,
            "is_approved": bool(self.is_approved),
            "approved_by": self.approved_by,
            "approved_at": isoformat(self.approved_at),
        }

    def to_dict(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        data = self.snapshot()
        if now is not None:
            from pricebook.engine.resolver import resolve_status

            data["status"] = resolve_status(self, now).value
        return data


class PriceAmount(db.Model):
    """One (price_type, currency) cell of a PriceRecord."""

    __tablename__ = "price_amounts"
    id = Column(Integer, primary_key=True)
    record_id = Column(Integer, ForeignKey("price_records.id"), nullable=False, index=True)
    price_type = Column(SqlEnum(PriceType, name="price_type_enum"), nullable=False)
    currency = Column(SqlEnum(Currency, name="price_currency_enum"), nullable=False)
    amount = Column(Numeric(24, 4), nullable=True)

    __table_args__ = (
        db.UniqueConstraint("record_id", "price_type", "currency", name="_price_amount_cell_uc"),
    )

    @property
    def field(self) -> str:
        return field_key(self.price_type, self.currency)


def field_key(price_type: PriceType, currency: Currency) -> str:
    return f"{price_type.value}:{currency.value}"


class PriceRecord(TemporalMixin, db.Model):
    __tablename__ = "price_records"

    subject_type = SubjectType.PRICE

    id = Column(Integer, primary_key=True)
    product_id = Column(String(64), nullable=False, index=True)
    organization_id = Column(String(64), nullable=True, index=True)
    exchange_rate = Column(Numeric(24, 10), nullable=True)
    created_by = Column(String(128), nullable=True)
    supersedes_id = Column(Integer, ForeignKey("price_records.id"), nullable=True)

    amounts = db.relationship(
        "PriceAmount",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="PriceAmount.id",
    )

    @property
    def subject(self) -> PriceSubject:
        return PriceSubject(self.product_id, self.organization_id)

    @property
    def actor(self) -> Optional[str]:
        return self.created_by

    @classmethod
    def defines(cls, price_type: Optional[PriceType] = None, currency: Optional[Currency] = None):
        """Filter clause: records holding a set amount in a matching cell."""
        clauses = [PriceAmount.amount.isnot(None)]
        if price_type is not None:
            clauses.append(PriceAmount.price_type == price_type)
        if currency is not None:
            clauses.append(PriceAmount.currency == currency)
        return cls.amounts.any(and_(*clauses))

    def amounts_map(self) -> Dict[Tuple[PriceType, Currency], Optional[Decimal]]:
        return {(a.price_type, a.currency): a.amount for a in self.amounts}

    def amount_for(self, price_type: PriceType, currency: Currency) -> Optional[Decimal]:
        return self.amounts_map().get((price_type, currency))

    def set_amounts(self, mapping: Dict[Tuple[PriceType, Currency], Optional[Decimal]]) -> None:
        self.amounts = [
            PriceAmount(price_type=price_type, currency=currency, amount=amount)
            for (price_type, currency), amount in mapping.items()
        ]

    def values(self) -> Dict[str, Optional[Decimal]]:
        """Numeric fields keyed the way the audit trail diffs them."""
        out = {field_key(pt, cur): amount for (pt, cur), amount in self.amounts_map().items()}
        out["exchange_rate"] = self.exchange_rate
        return out

    def snapshot(self) -> Dict[str, Any]:
        prices: Dict[str, Dict[str, Optional[str]]] = {}
        for (price_type, currency), amount in self.amounts_map().items():
            prices.setdefault(price_type.value, {})[currency.value] = format_decimal(amount)
        data = {
            "id": self.id,
            "subject_type": self.subject_type.value,
            "subject_key": self.subject.key,
            "product_id": self.product_id,
            "organization_id": self.organization_id,
            "prices": prices,
            "exchange_rate": format_decimal(self.exchange_rate),
            "created_by": self.created_by,
            "values": {k: format_decimal(v) for k, v in self.values().items()},
        }
        data.update(self._temporal_dict())
        return data


class ExchangeRateRecord(TemporalMixin, db.Model):
    __tablename__ = "exchange_rate_records"

    subject_type = SubjectType.RATE

    id = Column(Integer, primary_key=True)
    from_currency = Column(SqlEnum(Currency, name="rate_from_currency_enum"), nullable=False)
    to_currency = Column(SqlEnum(Currency, name="rate_to_currency_enum"), nullable=False)
    rate = Column(Numeric(24, 10), nullable=False)
    changed_by = Column(String(128), nullable=True)
    supersedes_id = Column(Integer, ForeignKey("exchange_rate_records.id"), nullable=True)

    __table_args__ = (
        db.Index("idx_exchange_rate_pair", "from_currency", "to_currency", "effective_from"),
    )

    @property
    def subject(self) -> RateSubject:
        return RateSubject(self.from_currency, self.to_currency)

    @property
    def actor(self) -> Optional[str]:
        return self.changed_by

    def values(self) -> Dict[str, Optional[Decimal]]:
        return {"rate": self.rate}

    def snapshot(self) -> Dict[str, Any]:
        data = {
            "id": self.id,
            "subject_type": self.subject_type.value,
            "subject_key": self.subject.key,
            "from_currency": self.from_currency.value if self.from_currency else None,
            "to_currency": self.to_currency.value if self.to_currency else None,
            "rate": format_decimal(self.rate),
            "changed_by": self.changed_by,
            "values": {"rate": format_decimal(self.rate)},
        }
        data.update(self._temporal_dict())
        return data


MODEL_BY_SUBJECT = {
    SubjectType.PRICE: PriceRecord,
    SubjectType.RATE: ExchangeRateRecord,
}


# --- Concurrency ---


class SubjectLock(db.Model):
    """Per-subject version counter; concurrent writers on one key collide here."""

    __tablename__ = "subject_locks"
    id = Column(Integer, primary_key=True)
    subject_type = Column(SqlEnum(SubjectType, name="lock_subject_type_enum"), nullable=False)
    subject_key = Column(String(160), nullable=False)
    write_count = Column(Integer, nullable=False, default=0)
    version = Column(Integer, nullable=False)
    updated_at = Column(DateTime, nullable=True)

    __table_args__ = (
        db.UniqueConstraint("subject_type", "subject_key", name="_subject_lock_uc"),
    )
    __mapper_args__ = {"version_id_col": version}


# --- Audit trail ---


class ChangeLogEntry(db.Model):
    """Append-only record of one mutation of a price or rate timeline."""

    __tablename__ = "change_log_entries"

    id = Column(Integer, primary_key=True)
    subject_type = Column(SqlEnum(SubjectType, name="change_subject_type_enum"), nullable=False, index=True)
    subject_id = Column(Integer, nullable=False, index=True)
    subject_key = Column(String(160), nullable=False, index=True)
    product_id = Column(String(64), nullable=True, index=True)
    change_type = Column(SqlEnum(ChangeType, name="change_type_enum"), nullable=False, index=True)
    old_value = Column(Text, nullable=True)
    new_value = Column(Text, nullable=False)
    diff = Column(Text, nullable=True)
    # ",direct:IDR,list:CNY," style list of touched cells, for LIKE filtering
    fields = Column(String(512), nullable=False, default=",")
    change_reason = Column(Text, nullable=True)
    changed_by = Column(String(128), nullable=True, index=True)
    changed_at = Column(DateTime, nullable=False, index=True)

    def old_value_dict(self) -> Optional[Dict[str, Any]]:
        return json.loads(self.old_value) if self.old_value else None

    def new_value_dict(self) -> Dict[str, Any]:
        return json.loads(self.new_value) if self.new_value else {}

    def diff_dict(self) -> Dict[str, Any]:
        return json.loads(self.diff) if self.diff else {}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "subject_type": self.subject_type.value,
            "subject_id": self.subject_id,
            "subject_key": self.subject_key,
            "product_id": self.product_id,
            "change_type": self.change_type.value,
            "old_value": self.old_value_dict(),
            "new_value": self.new_value_dict(),
            "diff": self.diff_dict(),
            "change_reason": self.change_reason,
            "changed_by": self.changed_by,
            "changed_at": isoformat(self.changed_at),
        }


@event.listens_for(ChangeLogEntry, "before_update")
def _refuse_change_log_update(mapper, connection, target):
    raise InvalidStateError("Change log entries are append-only", {"id": target.id})


@event.listens_for(ChangeLogEntry, "before_delete")
def _refuse_change_log_delete(mapper, connection, target):
    raise InvalidStateError("Change log entries are append-only", {"id": target.id})
