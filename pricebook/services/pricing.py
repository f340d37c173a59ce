# pricebook/services/pricing.py

from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, Tuple

from loguru import logger

from pricebook.db import transaction
from pricebook.db.models import (
    PRICE_CURRENCIES,
    ChangeType,
    Currency,
    ExchangeRateRecord,
    PriceRecord,
    PriceSubject,
    PriceType,
    RecordSource,
    SubjectType,
)
from pricebook.engine.auditor import ChangeAuditor
from pricebook.engine.rates import Conversion, RateApplicationService
from pricebook.engine.scheduler import UpcomingChangeScheduler
from pricebook.engine.store import TemporalRecordStore
from pricebook.errors import InvalidStateError, NoRateDefinedError, PricingError, ValidationError
from pricebook.utils.helpers import (
    parse_bool,
    parse_datetime,
    parse_decimal,
    sanitize_dict,
    sanitize_log_string,
    utcnow,
)


# --- Payload parsing ---


def parse_enum(enum_cls, value, field: str, errors: Dict[str, str]):
    if value is None or value == "":
        return None
    if isinstance(value, enum_cls):
        return value
    text = str(value).strip()
    for member in enum_cls:
        if text.lower() == member.value.lower() or text.upper() == member.name:
            return member
    errors[field] = f"must be one of {', '.join(m.value for m in enum_cls)}"
    return None


def _parse_field(parser, data: Dict[str, Any], field: str, errors: Dict[str, str], default=None):
    if field not in data:
        return default
    try:
        return parser(data[field])
    except (TypeError, ValueError) as exc:
        errors[field] = str(exc) or "invalid value"
        return default


def _require_object(data) -> Dict[str, Any]:
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError({"body": "must be a JSON object"})
    return data


def parse_amounts(data: Dict[str, Any], errors: Dict[str, str]) -> Dict[Tuple[PriceType, Currency], Optional[Decimal]]:
    """Read price cells from ``{"prices": {"direct": {"IDR": 1}}}`` or flat ``direct_idr`` keys."""
    amounts: Dict[Tuple[PriceType, Currency], Optional[Decimal]] = {}

    nested = data.get("prices")
    if nested is not None:
        if not isinstance(nested, dict):
            errors["prices"] = "must be an object keyed by price type"
            nested = {}
        for type_key, by_currency in nested.items():
            price_type = parse_enum(PriceType, type_key, f"prices.{type_key}", errors)
            if price_type is None:
                continue
            if not isinstance(by_currency, dict):
                errors[f"prices.{type_key}"] = "must be an object keyed by currency"
                continue
            for currency_key, raw in by_currency.items():
                field = f"prices.{type_key}.{currency_key}"
                currency = parse_enum(Currency, currency_key, field, errors)
                if currency is None:
                    continue
                try:
                    amounts[(price_type, currency)] = parse_decimal(raw)
                except ValueError as exc:
                    errors[field] = str(exc)

    for price_type in PriceType:
        for currency in PRICE_CURRENCIES:
            key = f"{price_type.value}_{currency.value.lower()}"
            if key in data:
                amounts[(price_type, currency)] = _parse_field(parse_decimal, data, key, errors)
    return amounts


def build_price_record(data: Dict[str, Any], now: datetime, base: Optional[PriceRecord] = None) -> PriceRecord:
    """Turn a request payload into an unsaved PriceRecord.

    With ``base`` the payload is applied on top of an existing version:
    unspecified price cells are carried over and the subject is fixed.
    """
    data = _require_object(data)
    errors: Dict[str, str] = {}

    if base is not None and not data:
        raise ValidationError({"body": "an update needs at least one field"})

    if base is not None:
        product_id, organization_id = base.product_id, base.organization_id
        for field, current in (("product_id", product_id), ("organization_id", organization_id)):
            if field in data and (data[field] or None) != current:
                errors[field] = "cannot change on a new version"
        amounts = base.amounts_map()
    else:
        product_id = sanitize_log_string(data.get("product_id")) or None
        organization_id = sanitize_log_string(data.get("organization_id")) or None
        amounts = {}
        if not product_id:
            errors["product_id"] = "required"

    amounts.update(parse_amounts(data, errors))
    record = PriceRecord(
        product_id=product_id,
        organization_id=organization_id,
        exchange_rate=_parse_field(parse_decimal, data, "exchange_rate", errors),
        effective_from=_parse_field(parse_datetime, data, "effective_from", errors) or now,
        effective_to=_parse_field(parse_datetime, data, "effective_to", errors),
        source=parse_enum(RecordSource, data.get("source"), "source", errors) or RecordSource.MANUAL,
        source_reference=sanitize_log_string(data.get("source_reference")),
        change_reason=sanitize_log_string(data.get("change_reason")),
        is_approved=bool(_parse_field(parse_bool, data, "is_approved", errors)),
    )
    record.set_amounts(amounts)
    if errors:
        raise ValidationError(errors)
    return record


def build_rate_record(data: Dict[str, Any], now: datetime, base: Optional[ExchangeRateRecord] = None) -> ExchangeRateRecord:
    data = _require_object(data)
    errors: Dict[str, str] = {}

    if base is not None and not data:
        raise ValidationError({"body": "an update needs at least one field"})

    if base is not None:
        from_currency, to_currency = base.from_currency, base.to_currency
        for field, current in (("from_currency", from_currency), ("to_currency", to_currency)):
            if field in data and parse_enum(Currency, data[field], field, errors) not in (None, current):
                errors[field] = "cannot change on a new version"
        rate = base.rate
    else:
        from_currency = parse_enum(Currency, data.get("from_currency"), "from_currency", errors)
        to_currency = parse_enum(Currency, data.get("to_currency"), "to_currency", errors)
        rate = None

    record = ExchangeRateRecord(
        from_currency=from_currency,
        to_currency=to_currency,
        rate=_parse_field(parse_decimal, data, "rate", errors, default=rate),
        effective_from=_parse_field(parse_datetime, data, "effective_from", errors) or now,
        effective_to=_parse_field(parse_datetime, data, "effective_to", errors),
        source=parse_enum(RecordSource, data.get("source"), "source", errors) or RecordSource.MANUAL,
        source_reference=sanitize_log_string(data.get("source_reference")),
        change_reason=sanitize_log_string(data.get("change_reason")),
        is_approved=bool(_parse_field(parse_bool, data, "is_approved", errors)),
    )
    if errors:
        raise ValidationError(errors)
    return record


def _cell_criteria(filters: Dict[str, Any]) -> List:
    price_type, currency = filters.get("price_type"), filters.get("currency")
    if price_type is None and currency is None:
        return []
    return [PriceRecord.defines(price_type, currency)]


def page_payload(pagination, serialize: Callable[[Any], Dict[str, Any]]) -> Dict[str, Any]:
    return {
        "items": [serialize(item) for item in pagination.items],
        "total": pagination.total,
        "page": pagination.page,
        "size": pagination.per_page,
        "pages": pagination.pages,
    }


# --- Service ---


class PricingService:
    """Entry point for every pricing operation.

    Each write runs in one transaction covering the record, any predecessor
    it closes or reopens, and its change-log entry.
    """

    def __init__(
        self,
        clock: Callable[[], datetime] = utcnow,
        horizon: timedelta = timedelta(hours=168),
        snapshot_pair: Tuple[Currency, Currency] = (Currency.IDR, Currency.CNY),
        page_size: int = 20,
        max_page_size: int = 100,
        backdate_grace: timedelta = timedelta(minutes=5),
    ):
        self.clock = clock
        self.page_size = page_size
        self.max_page_size = max_page_size
        self.snapshot_pair = snapshot_pair

        self.prices = TemporalRecordStore(PriceRecord, clock=clock, backdate_grace=backdate_grace)
        self.rates = TemporalRecordStore(ExchangeRateRecord, clock=clock, backdate_grace=backdate_grace)
        self.stores = {SubjectType.PRICE: self.prices, SubjectType.RATE: self.rates}
        self.auditor = ChangeAuditor(clock=clock)
        self.scheduler = UpcomingChangeScheduler(self.stores, self.auditor, clock=clock, default_horizon=horizon)
        self.rate_application = RateApplicationService(self.prices, self.rates, clock=clock, snapshot_pair=snapshot_pair)

    @classmethod
    def from_config(cls, config, clock: Optional[Callable[[], datetime]] = None) -> "PricingService":
        return cls(
            clock=clock or config.get("PRICING_CLOCK") or utcnow,
            horizon=timedelta(hours=int(config.get("PRICING_UPCOMING_HORIZON_HOURS", 168))),
            snapshot_pair=(
                Currency(config.get("PRICING_SNAPSHOT_FROM", "IDR")),
                Currency(config.get("PRICING_SNAPSHOT_TO", "CNY")),
            ),
            page_size=int(config.get("PRICING_PAGE_SIZE", 20)),
            max_page_size=int(config.get("PRICING_MAX_PAGE_SIZE", 100)),
            backdate_grace=timedelta(seconds=int(config.get("PRICING_BACKDATE_GRACE_SECONDS", 300))),
        )

    # --- writes ---

    def _write(self, action: str, work: Callable[[], Any]):
        try:
            with transaction():
                result = work()
        except PricingError as exc:
            logger.warning(f"{action} rejected: {exc}")
            raise
        except Exception:
            logger.exception(f"{action} failed")
            raise
        return result

    def _create_version(self, store: TemporalRecordStore, record, actor: Optional[str]):
        subject_type = store.subject_type
        previous = store.previous_version(record.subject, record.effective_from)
        before = previous.snapshot() if previous is not None else None

        # approval never carries over from the base version
        if record.is_approved:
            record.approved_by = actor
            record.approved_at = self.clock()
        store.create(record)
        change_type = ChangeType.UPDATE if previous is not None else ChangeType.CREATE
        self.auditor.record_change(
            subject_type,
            record.id,
            change_type,
            before,
            record.snapshot(),
            actor=actor,
            reason=record.change_reason,
        )
        logger.info(
            f"{subject_type.value} {record.subject.key}: {change_type.value} record {record.id} "
            f"effective {record.effective_from} by {actor or 'unknown'}"
        )
        return record

    def _capture_snapshot_rate(self, record: PriceRecord) -> None:
        if record.exchange_rate is not None:
            return
        from_currency, to_currency = self.snapshot_pair
        try:
            record.exchange_rate = self.rate_application.get_effective_rate(from_currency, to_currency)
        except NoRateDefinedError:
            logger.debug(f"No {from_currency.value}->{to_currency.value} rate to snapshot for {record.product_id}")

    def create_price(self, payload: Dict[str, Any], actor: Optional[str] = None) -> PriceRecord:
        actor = sanitize_log_string(actor)

        def work():
            record = build_price_record(payload, self.clock())
            record.created_by = actor
            self._capture_snapshot_rate(record)
            return self._create_version(self.prices, record, actor)

        return self._write("create_price", work)

    def update_price(self, record_id: int, payload: Dict[str, Any], actor: Optional[str] = None) -> PriceRecord:
        """Create a new version of the price that ``record_id`` belongs to."""
        actor = sanitize_log_string(actor)

        def work():
            base = self._version_base(self.prices, record_id)
            record = build_price_record(payload, self.clock(), base=base)
            record.created_by = actor
            self._capture_snapshot_rate(record)
            return self._create_version(self.prices, record, actor)

        return self._write("update_price", work)

    def cancel_price(self, record_id: int, actor: Optional[str] = None, reason: Optional[str] = None) -> PriceRecord:
        return self._write(
            "cancel_price",
            lambda: self.scheduler.cancel_upcoming(SubjectType.PRICE, record_id, sanitize_log_string(actor), reason),
        )

    def create_exchange_rate(self, payload: Dict[str, Any], actor: Optional[str] = None) -> ExchangeRateRecord:
        actor = sanitize_log_string(actor)

        def work():
            record = build_rate_record(payload, self.clock())
            record.changed_by = actor
            return self._create_version(self.rates, record, actor)

        return self._write("create_exchange_rate", work)

    def update_exchange_rate(
        self, record_id: int, payload: Dict[str, Any], actor: Optional[str] = None
    ) -> ExchangeRateRecord:
        actor = sanitize_log_string(actor)

        def work():
            base = self._version_base(self.rates, record_id)
            record = build_rate_record(payload, self.clock(), base=base)
            record.changed_by = actor
            return self._create_version(self.rates, record, actor)

        return self._write("update_exchange_rate", work)

    def cancel_exchange_rate(
        self, record_id: int, actor: Optional[str] = None, reason: Optional[str] = None
    ) -> ExchangeRateRecord:
        return self._write(
            "cancel_exchange_rate",
            lambda: self.scheduler.cancel_upcoming(SubjectType.RATE, record_id, sanitize_log_string(actor), reason),
        )

    def _approve(self, store: TemporalRecordStore, record_id: int, actor: Optional[str], reason: Optional[str]):
        record = store.get(record_id)
        before = record.snapshot()
        store.approve(record_id, actor)
        self.auditor.record_change(
            store.subject_type,
            record.id,
            ChangeType.APPROVE,
            before,
            record.snapshot(),
            actor=actor,
            reason=reason,
        )
        logger.info(f"{store.subject_type.value} record {record_id} ({record.subject.key}) approved by {actor or 'unknown'}")
        return record

    def approve_price(self, record_id: int, actor: Optional[str] = None, reason: Optional[str] = None) -> PriceRecord:
        return self._write(
            "approve_price",
            lambda: self._approve(self.prices, record_id, sanitize_log_string(actor), reason),
        )

    def approve_exchange_rate(
        self, record_id: int, actor: Optional[str] = None, reason: Optional[str] = None
    ) -> ExchangeRateRecord:
        return self._write(
            "approve_exchange_rate",
            lambda: self._approve(self.rates, record_id, sanitize_log_string(actor), reason),
        )

    def _version_base(self, store: TemporalRecordStore, record_id: int):
        base = store.get(record_id)
        if base.is_cancelled:
            raise InvalidStateError(
                f"Record {record_id} is cancelled and cannot be versioned",
                {"id": record_id, "status": "cancelled"},
            )
        return base

    # --- reads ---

    def clamp_page(self, page: Optional[int], size: Optional[int]) -> Tuple[int, int]:
        errors = {}
        page = 1 if page is None else page
        size = self.page_size if size is None else size
        if page < 1:
            errors["page"] = "must be 1 or greater"
        if size < 1:
            errors["size"] = "must be 1 or greater"
        if errors:
            raise ValidationError(errors)
        return page, min(size, self.max_page_size)

    def list_current(
        self,
        subject_type: SubjectType,
        filters: Optional[Dict[str, Any]] = None,
        as_of: Optional[datetime] = None,
    ) -> List:
        """Current record per subject.

        Price filters: product_id, organization_id, price_type, currency
        (records with a set amount in that cell). Rate filters: from_currency,
        to_currency. Both accept is_approved.
        """
        filters = filters or {}
        model = self.stores[subject_type].model
        criteria = []
        if subject_type is SubjectType.PRICE:
            if filters.get("product_id"):
                criteria.append(PriceRecord.product_id == filters["product_id"])
            if filters.get("organization_id"):
                criteria.append(PriceRecord.organization_id == filters["organization_id"])
            criteria.extend(_cell_criteria(filters))
        else:
            if filters.get("from_currency"):
                criteria.append(ExchangeRateRecord.from_currency == filters["from_currency"])
            if filters.get("to_currency"):
                criteria.append(ExchangeRateRecord.to_currency == filters["to_currency"])
        if filters.get("is_approved") is not None:
            criteria.append(model.is_approved == bool(filters["is_approved"]))
        return self.stores[subject_type].list_current(as_of=as_of, criteria=criteria)

    def list_upcoming(
        self,
        horizon: Optional[timedelta] = None,
        subject_type: Optional[SubjectType] = None,
        product_id: Optional[str] = None,
    ):
        return self.scheduler.list_upcoming(horizon=horizon, subject_type=subject_type, product_id=product_id)

    def list_history(
        self,
        subject,
        page: Optional[int] = None,
        size: Optional[int] = None,
        filters: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Versions of one subject, newest first; price history narrows by price_type/currency."""
        page, size = self.clamp_page(page, size)
        if isinstance(subject, PriceSubject):
            store, criteria = self.prices, _cell_criteria(filters or {})
        else:
            store, criteria = self.rates, []
        now = self.clock()
        return page_payload(store.query_history(subject, page, size, criteria=criteria), lambda r: r.to_dict(now))

    def list_change_logs(
        self,
        filters: Optional[Dict[str, Any]] = None,
        page: Optional[int] = None,
        size: Optional[int] = None,
    ) -> Dict[str, Any]:
        page, size = self.clamp_page(page, size)
        logger.debug(f"Change log query {sanitize_dict(dict(filters or {}))}")
        return page_payload(self.auditor.list_changes(filters, page, size), lambda e: e.to_dict())

    def get_effective_price(
        self,
        product_id: str,
        organization_id: Optional[str],
        price_type: PriceType,
        currency: Currency,
        as_of: Optional[datetime] = None,
    ) -> Decimal:
        return self.rate_application.get_effective_price(product_id, organization_id, price_type, currency, as_of)

    def get_effective_rate(self, from_currency: Currency, to_currency: Currency, as_of: Optional[datetime] = None) -> Decimal:
        return self.rate_application.get_effective_rate(from_currency, to_currency, as_of)

    def convert(
        self,
        amount: Decimal,
        from_currency: Currency,
        to_currency: Currency,
        as_of: Optional[datetime] = None,
    ) -> Conversion:
        return self.rate_application.convert(amount, from_currency, to_currency, as_of)

