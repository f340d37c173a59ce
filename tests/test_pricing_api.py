from datetime import datetime

from pricebook.db.models import ChangeLogEntry, ExchangeRateRecord, PriceRecord

ADMIN = {"X-Admin-ID": "admin-7"}
JAN_1 = datetime(2024, 1, 1)


def _post_rate(client, **overrides):
    payload = {"from_currency": "IDR", "to_currency": "CNY", "rate": "0.00044", "effective_from": "2024-01-01T00:00:00Z"}
    payload.update(overrides)
    return client.post("/api/admin/pricing/exchange-rates", json=payload, headers=ADMIN)


def test_create_price_returns_record_with_status(client):
    resp = client.post(
        "/api/admin/pricing/prices",
        json={
            "product_id": "P1",
            "prices": {"direct": {"IDR": 1000000, "CNY": None}, "list": {"IDR": "1200000"}},
            "effective_from": "2024-02-01T00:00:00Z",
            "change_reason": "launch",
        },
        headers=ADMIN,
    )
    assert resp.status_code == 201
    data = resp.get_json()
    assert data["status"] == "upcoming"
    assert data["prices"]["direct"] == {"IDR": "1000000", "CNY": None}
    assert data["prices"]["list"]["IDR"] == "1200000"
    assert data["created_by"] == "admin-7"
    assert data["effective_from"] == "2024-02-01T00:00:00Z"
    assert data["is_approved"] is False


def test_create_price_snapshots_current_rate(client, clock):
    clock.set(JAN_1)
    _post_rate(client)
    resp = client.post("/api/admin/pricing/prices", json={"product_id": "P1", "direct_idr": 100}, headers=ADMIN)
    assert resp.status_code == 201
    assert resp.get_json()["exchange_rate"] == "0.00044"


def test_validation_errors_are_400(client):
    resp = client.post("/api/admin/pricing/prices", json={"product_id": "P1", "direct_idr": "abc"})
    assert resp.status_code == 400
    body = resp.get_json()
    assert body["error"] == "validation_error"
    assert "direct_idr" in body["errors"]

    resp = client.post("/api/admin/pricing/prices", data="not json", content_type="text/plain")
    assert resp.status_code == 400
    assert "product_id" in resp.get_json()["errors"]

    resp = client.post("/api/admin/pricing/exchange-rates", json=[1, 2])
    assert resp.status_code == 400
    assert resp.get_json()["errors"] == {"body": "must be a JSON object"}


def test_overlap_is_409_conflict(client, clock):
    clock.set(JAN_1)
    assert _post_rate(client, effective_to="2024-03-01T00:00:00Z").status_code == 201
    resp = _post_rate(client, effective_from="2024-02-01T00:00:00Z")
    assert resp.status_code == 409
    assert resp.get_json()["error"] == "conflict"


def test_backdated_record_is_409(client):
    resp = _post_rate(client)
    assert resp.status_code == 409
    assert resp.get_json()["error"] == "conflict"
    assert ExchangeRateRecord.query.count() == 0


def test_update_creates_new_version(client, clock):
    clock.set(JAN_1)
    first = client.post(
        "/api/admin/pricing/prices",
        json={"product_id": "P1", "direct_idr": 100, "list_idr": 150, "effective_from": "2024-01-01T00:00:00Z"},
        headers=ADMIN,
    ).get_json()

    resp = client.put(
        f"/api/admin/pricing/prices/{first['id']}",
        json={"direct_idr": 110, "effective_from": "2024-02-01T00:00:00Z"},
        headers=ADMIN,
    )
    assert resp.status_code == 201
    second = resp.get_json()
    assert second["id"] != first["id"]
    assert second["supersedes_id"] == first["id"]
    assert second["prices"]["direct"]["IDR"] == "110"
    assert second["prices"]["list"]["IDR"] == "150"
    assert PriceRecord.query.count() == 2

    resp = client.put(f"/api/admin/pricing/prices/{first['id']}", json={"product_id": "OTHER", "direct_idr": 1})
    assert resp.status_code == 400
    assert resp.get_json()["errors"]["product_id"] == "cannot change on a new version"


def test_update_without_body_is_rejected(client, clock):
    clock.set(JAN_1)
    record = _post_rate(client).get_json()
    entries = ChangeLogEntry.query.count()

    for kwargs in ({}, {"json": {}}, {"data": "not json", "content_type": "text/plain"}):
        resp = client.put(f"/api/admin/pricing/exchange-rates/{record['id']}", headers=ADMIN, **kwargs)
        assert resp.status_code == 400
        assert "body" in resp.get_json()["errors"]

    assert ExchangeRateRecord.query.count() == 1
    assert ChangeLogEntry.query.count() == entries


def test_cancel_upcoming_and_refuse_active(client, clock):
    clock.set(JAN_1)
    active = _post_rate(client).get_json()
    upcoming = _post_rate(client, rate="0.00046", effective_from="2024-03-01T00:00:00Z").get_json()

    resp = client.delete(f"/api/admin/pricing/exchange-rates/{active['id']}", headers=ADMIN)
    assert resp.status_code == 409
    assert resp.get_json()["error"] == "invalid_state"

    resp = client.delete(
        f"/api/admin/pricing/exchange-rates/{upcoming['id']}", json={"change_reason": "typo"}, headers=ADMIN
    )
    assert resp.status_code == 200
    assert resp.get_json()["status"] == "cancelled"
    assert ChangeLogEntry.query.count() == 3

    assert client.delete("/api/admin/pricing/prices/999").status_code == 404


def test_approve_endpoints(client):
    price = client.post(
        "/api/admin/pricing/prices",
        json={"product_id": "P1", "direct_idr": 100, "effective_from": "2024-02-01T00:00:00Z"},
    ).get_json()

    resp = client.post(
        f"/api/admin/pricing/prices/{price['id']}/approve", json={"change_reason": "signed off"}, headers=ADMIN
    )
    assert resp.status_code == 200
    body = resp.get_json()
    assert body["is_approved"] is True
    assert body["approved_by"] == "admin-7"
    assert body["approved_at"] == "2024-01-15T12:00:00Z"

    again = client.post(f"/api/admin/pricing/prices/{price['id']}/approve", headers=ADMIN)
    assert again.status_code == 409

    rate = _post_rate(client, effective_from="2024-02-01T00:00:00Z").get_json()
    assert client.post(f"/api/admin/pricing/exchange-rates/{rate['id']}/approve").status_code == 200
    assert client.post("/api/admin/pricing/exchange-rates/999/approve").status_code == 404

    logs = client.get("/api/admin/pricing/change-logs?change_type=approve").get_json()
    assert logs["total"] == 2


def test_current_and_effective_price(client, clock):
    clock.set(JAN_1)
    client.post(
        "/api/admin/pricing/prices",
        json={"product_id": "P1", "direct_idr": 100, "effective_from": "2024-01-01T00:00:00Z"},
    )
    resp = client.get("/api/admin/pricing/prices?product_id=P1")
    assert resp.get_json()["total"] == 1
    assert resp.get_json()["items"][0]["status"] == "active"

    resp = client.get("/api/admin/pricing/prices/effective?product_id=P1&price_type=direct&currency=IDR")
    assert resp.status_code == 200
    assert resp.get_json()["amount"] == "100"

    resp = client.get("/api/admin/pricing/prices/effective?product_id=P1&price_type=list&currency=IDR")
    assert resp.status_code == 404
    assert resp.get_json()["error"] == "no_price_defined"

    resp = client.get("/api/admin/pricing/prices/effective?product_id=P1&price_type=retail&currency=IDR")
    assert resp.status_code == 400
    assert "price_type" in resp.get_json()["errors"]

    resp = client.get("/api/admin/pricing/prices/effective?product_id=P1")
    assert resp.status_code == 400
    assert set(resp.get_json()["errors"]) == {"price_type", "currency"}


def test_price_listing_filters(client, clock):
    clock.set(JAN_1)
    client.post("/api/admin/pricing/prices", json={"product_id": "P1", "direct_idr": 100})
    client.post("/api/admin/pricing/prices", json={"product_id": "P2", "list_cny": 5, "is_approved": True})

    def keys(query):
        return [item["product_id"] for item in client.get(f"/api/admin/pricing/prices?{query}").get_json()["items"]]

    assert keys("price_type=list") == ["P2"]
    assert keys("currency=IDR") == ["P1"]
    assert keys("price_type=direct&currency=CNY") == []
    assert keys("is_approved=true") == ["P2"]
    assert keys("is_approved=false") == ["P1"]
    assert client.get("/api/admin/pricing/prices?is_approved=maybe").status_code == 400

    history = client.get("/api/admin/pricing/prices/history?product_id=P1&currency=CNY").get_json()
    assert history["total"] == 0


def test_history_and_upcoming_endpoints(client, clock):
    clock.set(JAN_1)
    client.post(
        "/api/admin/pricing/prices",
        json={"product_id": "P1", "direct_idr": 100, "effective_from": "2024-01-01T00:00:00Z"},
    )
    clock.set(datetime(2024, 1, 15, 12))
    client.post(
        "/api/admin/pricing/prices",
        json={"product_id": "P1", "direct_idr": 120, "effective_from": "2024-01-16T12:00:00Z"},
    )

    history = client.get("/api/admin/pricing/prices/history?product_id=P1&size=1").get_json()
    assert history["total"] == 2
    assert history["pages"] == 2
    assert history["items"][0]["prices"]["direct"]["IDR"] == "120"

    upcoming = client.get("/api/admin/pricing/prices/upcoming").get_json()
    assert upcoming["total"] == 1
    assert upcoming["items"][0]["hours_until"] == 24

    assert client.get("/api/admin/pricing/prices/upcoming?hours_ahead=12").get_json()["total"] == 0
    assert client.get("/api/admin/pricing/prices/upcoming?hours_ahead=abc").status_code == 400
    assert client.get("/api/admin/pricing/prices/history").status_code == 400
    assert client.get("/api/admin/pricing/prices/history?product_id=P1&page=0").status_code == 400


def test_exchange_rate_endpoints(client, clock):
    clock.set(JAN_1)
    _post_rate(client)
    listing = client.get("/api/admin/pricing/exchange-rates?from_currency=IDR").get_json()
    assert [item["rate"] for item in listing["items"]] == ["0.00044"]

    history = client.get("/api/admin/pricing/exchange-rates/history?from_currency=IDR&to_currency=CNY").get_json()
    assert history["total"] == 1

    resp = client.get("/api/admin/pricing/exchange-rates/convert?amount=1000000&from_currency=IDR&to_currency=CNY")
    assert resp.status_code == 200
    body = resp.get_json()
    assert body["to_amount"] == "440"
    assert body["rate_effective_from"] == "2024-01-01T00:00:00Z"

    resp = client.get("/api/admin/pricing/exchange-rates/convert?amount=1&from_currency=CNY&to_currency=USD")
    assert resp.status_code == 404
    assert resp.get_json()["error"] == "no_rate_defined"

    resp = client.get("/api/admin/pricing/exchange-rates/convert?amount=1&from=IDR&to=CNY")
    assert resp.status_code == 400
    assert set(resp.get_json()["errors"]) == {"from_currency", "to_currency"}

    assert client.get("/api/admin/pricing/exchange-rates/upcoming").get_json()["total"] == 0


def test_change_logs_endpoint(client, clock):
    clock.set(JAN_1)
    _post_rate(client)
    client.post("/api/admin/pricing/prices", json={"product_id": "P1", "list_cny": 5}, headers=ADMIN)

    body = client.get("/api/admin/pricing/change-logs?price_type=list&currency=CNY").get_json()
    assert body["total"] == 1
    assert body["items"][0]["product_id"] == "P1"
    assert body["items"][0]["change_type"] == "create"

    body = client.get("/api/admin/pricing/change-logs?subject_type=rate&actor=admin-7").get_json()
    assert body["total"] == 1
    assert body["items"][0]["subject_key"] == "IDR>CNY"

    assert client.get("/api/admin/pricing/change-logs?change_type=rename").status_code == 400
    resp = client.get("/api/admin/pricing/change-logs?subject_id=1")
    assert resp.status_code == 400
    assert "subject_type" in resp.get_json()["errors"]
    assert client.get("/api/admin/pricing/change-logs?subject_type=price&subject_id=1").get_json()["total"] == 1


def test_health_and_unknown_route(client):
    resp = client.get("/health")
    assert resp.status_code == 200
    assert resp.get_json()["database"] == "ok"

    resp = client.get("/api/admin/pricing/nope")
    assert resp.status_code == 404
    assert resp.get_json()["error"] == "not_found"


def test_clock_from_config_drives_status(client, clock):
    client.post(
        "/api/admin/pricing/prices",
        json={"product_id": "P1", "direct_idr": 100, "effective_from": "2024-02-01T00:00:00Z"},
    )
    assert client.get("/api/admin/pricing/prices?product_id=P1").get_json()["total"] == 0
    clock.set(datetime(2024, 2, 1))
    assert client.get("/api/admin/pricing/prices?product_id=P1").get_json()["total"] == 1
