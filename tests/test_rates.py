from datetime import datetime
from decimal import Decimal

import pytest

from pricebook.db.models import Currency, PriceType
from pricebook.errors import NoPriceDefinedError, NoRateDefinedError
from tests.factories import ExchangeRateRecordFactory, PriceRecordFactory


def test_effective_rate_and_missing_rate(service):
    ExchangeRateRecordFactory(rate=Decimal("0.00044"), effective_from=datetime(2024, 1, 1))
    assert service.get_effective_rate(Currency.IDR, Currency.CNY) == Decimal("0.00044")
    with pytest.raises(NoRateDefinedError):
        service.get_effective_rate(Currency.CNY, Currency.IDR)
    with pytest.raises(NoRateDefinedError):
        service.get_effective_rate(Currency.IDR, Currency.CNY, as_of=datetime(2023, 12, 31))


def test_same_currency_rate_is_one(service):
    assert service.get_effective_rate(Currency.EUR, Currency.EUR) == Decimal(1)
    conversion = service.convert(Decimal("12.5"), Currency.EUR, Currency.EUR)
    assert conversion.to_amount == Decimal("12.5")
    assert conversion.rate_effective_from is None


def test_convert_reports_rate_used(service):
    ExchangeRateRecordFactory(
        from_currency=Currency.USD,
        to_currency=Currency.IDR,
        rate=Decimal("15500"),
        effective_from=datetime(2024, 1, 10),
    )
    conversion = service.convert(Decimal("2"), Currency.USD, Currency.IDR)
    assert conversion.to_amount == Decimal("31000")
    assert conversion.rate == Decimal("15500")
    assert conversion.rate_effective_from == datetime(2024, 1, 10)
    assert conversion.to_dict()["to_amount"] == "31000"


def test_missing_or_null_price_is_an_error_never_zero(service):
    PriceRecordFactory(product_id="P1")
    assert service.get_effective_price("P1", None, PriceType.DIRECT, Currency.IDR) == Decimal("1000000")
    with pytest.raises(NoPriceDefinedError) as exc:
        service.get_effective_price("P1", None, PriceType.LIST, Currency.CNY)
    assert exc.value.details["record_id"] is not None
    with pytest.raises(NoPriceDefinedError):
        service.get_effective_price("UNKNOWN", None, PriceType.DIRECT, Currency.IDR)


def test_organization_price_falls_back_to_global(service, clock):
    clock.set(datetime(2024, 1, 1))
    service.create_price({"product_id": "P1", "direct_idr": 100, "effective_from": "2024-01-01T00:00:00Z"})
    service.create_price(
        {"product_id": "P1", "organization_id": "ORG1", "direct_idr": 90, "effective_from": "2024-01-01T00:00:00Z"}
    )
    assert service.get_effective_price("P1", "ORG1", PriceType.DIRECT, Currency.IDR) == Decimal("90")
    assert service.get_effective_price("P1", "ORG2", PriceType.DIRECT, Currency.IDR) == Decimal("100")


def test_snapshot_conversion_in_both_directions(service):
    record = PriceRecordFactory(product_id="P1", exchange_rate=Decimal("0.0005"))
    rates = service.rate_application

    forward = rates.convert_with_snapshot(record, Decimal("1000000"))
    assert forward.snapshot is True
    assert forward.to_amount == Decimal("500")

    backward = rates.convert_with_snapshot(record, Decimal("500"), Currency.CNY, Currency.IDR)
    assert backward.rate == Decimal("2000")
    assert backward.to_amount == Decimal("1000000")


def test_snapshot_falls_back_to_rate_live_at_creation(service):
    ExchangeRateRecordFactory(rate=Decimal("0.00044"), effective_from=datetime(2024, 1, 1), effective_to=datetime(2024, 3, 1))
    ExchangeRateRecordFactory(rate=Decimal("0.00046"), effective_from=datetime(2024, 3, 1))
    record = PriceRecordFactory(product_id="P1", exchange_rate=None, created_at=datetime(2024, 2, 10))
    assert service.rate_application.snapshot_rate(record) == Decimal("0.00044")


def test_idr_to_cny_end_to_end(service, clock):
    clock.set(datetime(2024, 1, 1))
    service.create_exchange_rate(
        {"from_currency": "IDR", "to_currency": "CNY", "rate": "0.00044", "effective_from": "2024-01-01T00:00:00Z"}
    )
    p1 = service.create_price(
        {"product_id": "P1", "direct_idr": 1000000, "effective_from": "2024-02-01T00:00:00Z", "exchange_rate": "0.00044"}
    )

    as_of = datetime(2024, 2, 15)
    assert service.get_effective_price("P1", None, PriceType.DIRECT, Currency.IDR, as_of) == Decimal("1000000")
    assert service.get_effective_rate(Currency.IDR, Currency.CNY, as_of) == Decimal("0.00044")

    clock.set(datetime(2024, 2, 20))
    service.create_exchange_rate(
        {"from_currency": "IDR", "to_currency": "CNY", "rate": "0.00046", "effective_from": "2024-03-01T00:00:00Z"}
    )

    clock.set(datetime(2024, 3, 5))
    # P1 keeps converting with the rate it was priced at
    snapshot = service.rate_application.convert_with_snapshot(p1, Decimal("1000000"))
    assert snapshot.rate == Decimal("0.00044")
    assert snapshot.to_amount == Decimal("440")
    assert service.get_effective_rate(Currency.IDR, Currency.CNY, as_of) == Decimal("0.00044")
    assert service.get_effective_rate(Currency.IDR, Currency.CNY) == Decimal("0.00046")

    p2 = service.create_price({"product_id": "P2", "direct_idr": 2000000})
    assert p2.exchange_rate == Decimal("0.00046")
    assert p2.effective_from == datetime(2024, 3, 5)
    assert service.rate_application.convert_with_snapshot(p2, Decimal("1000000")).to_amount == Decimal("460")
