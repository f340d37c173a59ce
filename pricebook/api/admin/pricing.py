from datetime import timedelta
from typing import Any, Dict

from flask import Blueprint, current_app, jsonify, request

from pricebook.db.models import ChangeType, Currency, PriceSubject, PriceType, RateSubject, SubjectType
from pricebook.errors import ValidationError
from pricebook.services.pricing import PricingService, parse_enum
from pricebook.utils.helpers import (
    format_decimal,
    isoformat,
    parse_bool,
    parse_datetime,
    parse_decimal,
    sanitize_log_string,
)

# Admin pricing panel; authentication sits in front of this blueprint.
pricing_bp = Blueprint("pricing", __name__, url_prefix="/api/admin/pricing")


def _service() -> PricingService:
    return PricingService.from_config(current_app.config)


def _actor():
    return sanitize_log_string(request.headers.get("X-Admin-ID")) or None


def _args(*names: str, required=()) -> Dict[str, Any]:
    values = {name: (request.args.get(name) or "").strip() or None for name in names}
    missing = {name: "required" for name in required if not values.get(name)}
    if missing:
        raise ValidationError(missing)
    return values


def _int_arg(name: str, errors: Dict[str, str]):
    raw = request.args.get(name)
    if raw in (None, ""):
        return None
    try:
        return int(raw)
    except ValueError:
        errors[name] = "must be an integer"
        return None


def _datetime_arg(name: str, errors: Dict[str, str]):
    try:
        return parse_datetime(request.args.get(name))
    except ValueError as exc:
        errors[name] = str(exc)
        return None


def _enum_arg(enum_cls, name: str, errors: Dict[str, str]):
    return parse_enum(enum_cls, request.args.get(name), name, errors)


def _bool_arg(name: str, errors: Dict[str, str]):
    try:
        return parse_bool(request.args.get(name))
    except ValueError as exc:
        errors[name] = str(exc)
        return None


def _paging(errors: Dict[str, str]):
    return _int_arg("page", errors), _int_arg("size", errors)


def _raise_if(errors: Dict[str, str]) -> None:
    if errors:
        raise ValidationError(errors)


def _json_body():
    return request.get_json(silent=True)


def _reason():
    body = _json_body()
    return body.get("change_reason") if isinstance(body, dict) else None


# --- Prices ---


@pricing_bp.route("/prices", methods=["GET"])
def list_current_prices():
    """Current price of every product (optionally filtered) at ``as_of`` or now."""
    errors: Dict[str, str] = {}
    filters = _args("product_id", "organization_id")
    filters["price_type"] = _enum_arg(PriceType, "price_type", errors)
    filters["currency"] = _enum_arg(Currency, "currency", errors)
    filters["is_approved"] = _bool_arg("is_approved", errors)
    as_of = _datetime_arg("as_of", errors)
    _raise_if(errors)
    service = _service()
    as_of = as_of or service.clock()
    records = service.list_current(SubjectType.PRICE, filters, as_of=as_of)
    return jsonify({"items": [r.to_dict(as_of) for r in records], "total": len(records)})


@pricing_bp.route("/prices", methods=["POST"])
def create_price():
    service = _service()
    record = service.create_price(_json_body(), actor=_actor())
    return jsonify(record.to_dict(service.clock())), 201


@pricing_bp.route("/prices/<int:record_id>", methods=["PUT"])
def update_price(record_id):
    """Store the payload as a new version; the original record is not edited."""
    service = _service()
    record = service.update_price(record_id, _json_body(), actor=_actor())
    return jsonify(record.to_dict(service.clock())), 201


@pricing_bp.route("/prices/<int:record_id>", methods=["DELETE"])
def cancel_price(record_id):
    service = _service()
    record = service.cancel_price(record_id, actor=_actor(), reason=_reason())
    return jsonify(record.to_dict(service.clock()))


@pricing_bp.route("/prices/<int:record_id>/approve", methods=["POST"])
def approve_price(record_id):
    service = _service()
    record = service.approve_price(record_id, actor=_actor(), reason=_reason())
    return jsonify(record.to_dict(service.clock()))


@pricing_bp.route("/prices/history", methods=["GET"])
def price_history():
    args = _args("product_id", "organization_id", required=("product_id",))
    errors: Dict[str, str] = {}
    filters = {
        "price_type": _enum_arg(PriceType, "price_type", errors),
        "currency": _enum_arg(Currency, "currency", errors),
    }
    page, size = _paging(errors)
    _raise_if(errors)
    subject = PriceSubject(args["product_id"], args["organization_id"])
    return jsonify(_service().list_history(subject, page, size, filters))


@pricing_bp.route("/prices/upcoming", methods=["GET"])
def upcoming_prices():
    return _upcoming(SubjectType.PRICE)


@pricing_bp.route("/prices/effective", methods=["GET"])
def effective_price():
    args = _args("product_id", "organization_id", "price_type", "currency", required=("product_id", "price_type", "currency"))
    errors: Dict[str, str] = {}
    price_type = _enum_arg(PriceType, "price_type", errors)
    currency = _enum_arg(Currency, "currency", errors)
    as_of = _datetime_arg("as_of", errors)
    _raise_if(errors)

    service = _service()
    as_of = as_of or service.clock()
    amount = service.get_effective_price(args["product_id"], args["organization_id"], price_type, currency, as_of)
    return jsonify(
        {
            "product_id": args["product_id"],
            "organization_id": args["organization_id"],
            "price_type": price_type.value,
            "currency": currency.value,
            "amount": format_decimal(amount),
            "as_of": isoformat(as_of),
        }
    )


# --- Exchange rates ---


@pricing_bp.route("/exchange-rates", methods=["GET"])
def list_current_rates():
    errors: Dict[str, str] = {}
    filters = {
        "from_currency": _enum_arg(Currency, "from_currency", errors),
        "to_currency": _enum_arg(Currency, "to_currency", errors),
        "is_approved": _bool_arg("is_approved", errors),
    }
    as_of = _datetime_arg("as_of", errors)
    _raise_if(errors)
    service = _service()
    as_of = as_of or service.clock()
    records = service.list_current(SubjectType.RATE, filters, as_of=as_of)
    return jsonify({"items": [r.to_dict(as_of) for r in records], "total": len(records)})


@pricing_bp.route("/exchange-rates", methods=["POST"])
def create_exchange_rate():
    service = _service()
    record = service.create_exchange_rate(_json_body(), actor=_actor())
    return jsonify(record.to_dict(service.clock())), 201


@pricing_bp.route("/exchange-rates/<int:record_id>", methods=["PUT"])
def update_exchange_rate(record_id):
    service = _service()
    record = service.update_exchange_rate(record_id, _json_body(), actor=_actor())
    return jsonify(record.to_dict(service.clock())), 201


@pricing_bp.route("/exchange-rates/<int:record_id>", methods=["DELETE"])
def cancel_exchange_rate(record_id):
    service = _service()
    record = service.cancel_exchange_rate(record_id, actor=_actor(), reason=_reason())
    return jsonify(record.to_dict(service.clock()))


@pricing_bp.route("/exchange-rates/<int:record_id>/approve", methods=["POST"])
def approve_exchange_rate(record_id):
    service = _service()
    record = service.approve_exchange_rate(record_id, actor=_actor(), reason=_reason())
    return jsonify(record.to_dict(service.clock()))


@pricing_bp.route("/exchange-rates/history", methods=["GET"])
def exchange_rate_history():
    _args("from_currency", "to_currency", required=("from_currency", "to_currency"))
    errors: Dict[str, str] = {}
    from_currency = _enum_arg(Currency, "from_currency", errors)
    to_currency = _enum_arg(Currency, "to_currency", errors)
    page, size = _paging(errors)
    _raise_if(errors)
    return jsonify(_service().list_history(RateSubject(from_currency, to_currency), page, size))


@pricing_bp.route("/exchange-rates/upcoming", methods=["GET"])
def upcoming_rates():
    return _upcoming(SubjectType.RATE)


@pricing_bp.route("/exchange-rates/convert", methods=["GET"])
def convert():
    _args("amount", "from_currency", "to_currency", required=("amount", "from_currency", "to_currency"))
    errors: Dict[str, str] = {}
    from_currency = _enum_arg(Currency, "from_currency", errors)
    to_currency = _enum_arg(Currency, "to_currency", errors)
    as_of = _datetime_arg("as_of", errors)
    amount = None
    try:
        amount = parse_decimal(request.args.get("amount"))
    except ValueError as exc:
        errors["amount"] = str(exc)
    _raise_if(errors)

    conversion = _service().convert(amount, from_currency, to_currency, as_of)
    return jsonify(conversion.to_dict())


# --- Upcoming / change logs ---


def _upcoming(subject_type: SubjectType):
    errors: Dict[str, str] = {}
    hours = _int_arg("hours_ahead", errors)
    if hours is not None and hours <= 0:
        errors["hours_ahead"] = "must be greater than 0"
    _raise_if(errors)

    service = _service()
    now = service.clock()
    product_id = request.args.get("product_id") if subject_type is SubjectType.PRICE else None
    horizon = timedelta(hours=hours) if hours is not None else None
    upcoming = service.list_upcoming(horizon=horizon, subject_type=subject_type, product_id=product_id)
    return jsonify({"items": [u.to_dict(now) for u in upcoming], "total": len(upcoming)})


@pricing_bp.route("/change-logs", methods=["GET"])
def change_logs():
    errors: Dict[str, str] = {}
    filters = {
        "subject_type": _enum_arg(SubjectType, "subject_type", errors),
        "subject_id": _int_arg("subject_id", errors),
        "product_id": request.args.get("product_id") or None,
        "price_type": _enum_arg(PriceType, "price_type", errors),
        "currency": _enum_arg(Currency, "currency", errors),
        "change_type": _enum_arg(ChangeType, "change_type", errors),
        "changed_from": _datetime_arg("changed_from", errors),
        "changed_to": _datetime_arg("changed_to", errors),
        "actor": request.args.get("actor") or None,
    }
    page, size = _paging(errors)
    _raise_if(errors)
    return jsonify(_service().list_change_logs(filters, page, size))
