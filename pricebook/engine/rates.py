"""Effective price/rate lookups and currency conversion."""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Dict, Optional, Tuple

from pricebook.db.models import Currency, PriceRecord, PriceSubject, PriceType, RateSubject
from pricebook.engine.store import TemporalRecordStore
from pricebook.errors import NoPriceDefinedError, NoRateDefinedError
from pricebook.utils.helpers import format_decimal, isoformat, utcnow

ONE = Decimal(1)


@dataclass
class Conversion:
    from_currency: Currency
    to_currency: Currency
    from_amount: Decimal
    to_amount: Decimal
    rate: Decimal
    rate_effective_from: Optional[datetime] = None
    snapshot: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "from_currency": self.from_currency.value,
            "to_currency": self.to_currency.value,
            "from_amount": format_decimal(self.from_amount),
            "to_amount": format_decimal(self.to_amount),
            "rate": format_decimal(self.rate),
            "rate_effective_from": isoformat(self.rate_effective_from),
            "snapshot": self.snapshot,
        }


class RateApplicationService:
    def __init__(
        self,
        price_store: TemporalRecordStore,
        rate_store: TemporalRecordStore,
        clock: Callable[[], datetime] = utcnow,
        snapshot_pair: Tuple[Currency, Currency] = (Currency.IDR, Currency.CNY),
    ):
        self.price_store = price_store
        self.rate_store = rate_store
        self.clock = clock
        self.snapshot_pair = snapshot_pair

    # --- prices ---

    def effective_price_record(
        self,
        product_id: str,
        organization_id: Optional[str] = None,
        as_of: Optional[datetime] = None,
    ) -> Optional[PriceRecord]:
        """Organization-scoped record if one is current, else the global one."""
        as_of = as_of or self.clock()
        record = self.price_store.query_current(PriceSubject(product_id, organization_id), as_of)
        if record is None and organization_id is not None:
            record = self.price_store.query_current(PriceSubject(product_id, None), as_of)
        return record

    def get_effective_price(
        self,
        product_id: str,
        organization_id: Optional[str],
        price_type: PriceType,
        currency: Currency,
        as_of: Optional[datetime] = None,
    ) -> Decimal:
        as_of = as_of or self.clock()
        record = self.effective_price_record(product_id, organization_id, as_of)
        amount = record.amount_for(price_type, currency) if record is not None else None
        if amount is None:
            raise NoPriceDefinedError(
                f"No {price_type.value} {currency.value} price for {product_id} at {isoformat(as_of)}",
                {
                    "product_id": product_id,
                    "organization_id": organization_id,
                    "price_type": price_type.value,
                    "currency": currency.value,
                    "record_id": record.id if record is not None else None,
                },
            )
        return amount

    # --- rates ---

    def effective_rate_record(self, from_currency: Currency, to_currency: Currency, as_of: Optional[datetime] = None):
        return self.rate_store.query_current(RateSubject(from_currency, to_currency), as_of or self.clock())

    def get_effective_rate(
        self,
        from_currency: Currency,
        to_currency: Currency,
        as_of: Optional[datetime] = None,
    ) -> Decimal:
        if from_currency == to_currency:
            return ONE
        return self._require_rate_record(from_currency, to_currency, as_of or self.clock()).rate

    def _require_rate_record(self, from_currency: Currency, to_currency: Currency, as_of: datetime):
        record = self.effective_rate_record(from_currency, to_currency, as_of)
        if record is None:
            raise NoRateDefinedError(
                f"No {from_currency.value}->{to_currency.value} rate at {isoformat(as_of)}",
                {"from_currency": from_currency.value, "to_currency": to_currency.value},
            )
        return record

    def convert(
        self,
        amount: Decimal,
        from_currency: Currency,
        to_currency: Currency,
        as_of: Optional[datetime] = None,
    ) -> Conversion:
        as_of = as_of or self.clock()
        if from_currency == to_currency:
            return Conversion(from_currency, to_currency, amount, amount, ONE)
        record = self._require_rate_record(from_currency, to_currency, as_of)
        return Conversion(from_currency, to_currency, amount, amount * record.rate, record.rate, record.effective_from)

    # --- snapshots ---

    def snapshot_rate(self, record: PriceRecord) -> Decimal:
        """Rate a price record converts with: its own snapshot, else the rate live at its creation."""
        if record.exchange_rate is not None:
            return record.exchange_rate
        from_currency, to_currency = self.snapshot_pair
        return self.get_effective_rate(from_currency, to_currency, record.created_at)

    def convert_with_snapshot(
        self,
        record: PriceRecord,
        amount: Decimal,
        from_currency: Optional[Currency] = None,
        to_currency: Optional[Currency] = None,
    ) -> Conversion:
        """Convert ``amount`` as of ``record``; later rate versions never change the result."""
        pair_from, pair_to = self.snapshot_pair
        from_currency = from_currency or pair_from
        to_currency = to_currency or pair_to

        if from_currency == to_currency:
            return Conversion(from_currency, to_currency, amount, amount, ONE, snapshot=True)
        if (from_currency, to_currency) == (pair_from, pair_to):
            rate = self.snapshot_rate(record)
        elif (from_currency, to_currency) == (pair_to, pair_from):
            rate = ONE / self.snapshot_rate(record)
        else:
            rate = self.get_effective_rate(from_currency, to_currency, record.created_at)
        return Conversion(
            from_currency,
            to_currency,
            amount,
            amount * rate,
            rate,
            record.effective_from,
            snapshot=True,
        )
