from datetime import datetime
from decimal import Decimal

import factory
from pricebook import db
from pricebook.db.models import (
    Currency,
    ExchangeRateRecord,
    PriceAmount,
    PriceRecord,
    PriceType,
    RecordSource,
)


class PriceAmountFactory(factory.Factory):
    class Meta:
        model = PriceAmount

    price_type = PriceType.DIRECT
    currency = Currency.IDR
    amount = Decimal("1000000")


class PriceRecordFactory(factory.alchemy.SQLAlchemyModelFactory):
    """Writes straight to the table, bypassing the store's overlap checks."""

    class Meta:
        model = PriceRecord
        sqlalchemy_session = db.session
        sqlalchemy_session_persistence = "commit"

    product_id = factory.Sequence(lambda n: f"P{n}")
    organization_id = None
    exchange_rate = None
    effective_from = datetime(2024, 1, 1)
    effective_to = None
    source = RecordSource.MANUAL
    created_at = datetime(2024, 1, 1)
    created_by = "seed"
    amounts = factory.LazyFunction(lambda: [PriceAmountFactory()])


class ExchangeRateRecordFactory(factory.alchemy.SQLAlchemyModelFactory):
    class Meta:
        model = ExchangeRateRecord
        sqlalchemy_session = db.session
        sqlalchemy_session_persistence = "commit"

    from_currency = Currency.IDR
    to_currency = Currency.CNY
    rate = Decimal("0.00044")
    effective_from = datetime(2024, 1, 1)
    effective_to = None
    source = RecordSource.MANUAL
    created_at = datetime(2024, 1, 1)
    changed_by = "seed"
