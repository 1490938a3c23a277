from datetime import timedelta

from bson import ObjectId

import database
from database import utcnow


def iso(dt):
    return dt.isoformat()


def create(client, admin, **payload):
    return client.post("/api/discounts/create", json=payload, headers=admin["headers"])


def test_create_discount_links_product_and_shows_on_catalog(client, admin, make_product):
    pid = make_product(price=200.0)
    resp = create(client, admin, product_id=pid, discount_percentage=25)
    assert resp.status_code == 201
    discount = resp.json()["data"]
    assert discount["is_active"] is True
    assert discount["end_date"] is None

    product = database.db["product"].find_one({"_id": ObjectId(pid)})
    assert product["discount_id"] == discount["id"]

    listed = client.get(f"/api/products/{pid}").json()["data"]
    assert listed["is_on_discount"] is True
    assert listed["discounted_price"] == 150.0


def test_percentage_bounds_are_exclusive(client, admin, make_product):
    pid = make_product()
    for pct in (0, 100, -5, 150):
        resp = create(client, admin, product_id=pid, discount_percentage=pct)
        assert resp.status_code == 400
        assert resp.json()["error"] == "Discount percentage must be between 0 and 100"


def test_end_date_must_follow_start_date(client, admin, make_product):
    pid = make_product()
    start = utcnow()
    resp = create(
        client, admin, product_id=pid, discount_percentage=10,
        start_date=iso(start), end_date=iso(start - timedelta(days=1)),
    )
    assert resp.status_code == 400
    assert resp.json()["error"] == "End date must be after start date"


def test_second_active_discount_is_rejected(client, admin, make_product):
    pid = make_product()
    assert create(client, admin, product_id=pid, discount_percentage=10).status_code == 201
    resp = create(client, admin, product_id=pid, discount_percentage=15)
    assert resp.status_code == 400
    assert "already has an active discount" in resp.json()["error"]


def test_new_discount_allowed_once_previous_has_ended(client, admin, make_product):
    pid = make_product()
    now = utcnow()
    expired = create(
        client, admin, product_id=pid, discount_percentage=10,
        start_date=iso(now - timedelta(days=10)), end_date=iso(now - timedelta(days=1)),
    )
    assert expired.status_code == 201
    resp = create(client, admin, product_id=pid, discount_percentage=30)
    assert resp.status_code == 201


def test_create_for_unknown_product(client, admin):
    resp = create(client, admin, product_id=str(ObjectId()), discount_percentage=10)
    assert resp.status_code == 404


def test_discount_mutations_require_admin(client, user, make_product):
    pid = make_product()
    resp = client.post(
        "/api/discounts/create", json={"product_id": pid, "discount_percentage": 10}, headers=user["headers"]
    )
    assert resp.status_code == 403


def test_reactivating_expired_discount_fails(client, admin, make_product):
    pid = make_product()
    now = utcnow()
    discount = create(
        client, admin, product_id=pid, discount_percentage=10, is_active=False,
        start_date=iso(now - timedelta(days=10)), end_date=iso(now - timedelta(days=1)),
    ).json()["data"]

    resp = client.patch(f"/api/discounts/{discount['id']}", json={"is_active": True}, headers=admin["headers"])
    assert resp.status_code == 400
    assert resp.json()["error"] == "Cannot activate an expired discount. Please create a new one."

    resp = client.patch(
        f"/api/discounts/{discount['id']}",
        json={"is_active": True, "end_date": iso(now + timedelta(days=5))},
        headers=admin["headers"],
    )
    assert resp.status_code == 200
    assert resp.json()["data"]["is_active"] is True


def test_update_percentage(client, admin, make_product):
    pid = make_product(price=80.0)
    discount = create(client, admin, product_id=pid, discount_percentage=10).json()["data"]
    resp = client.patch(
        f"/api/discounts/{discount['id']}", json={"discount_percentage": 50}, headers=admin["headers"]
    )
    assert resp.status_code == 200
    assert client.get(f"/api/products/{pid}").json()["data"]["discounted_price"] == 40.0

    resp = client.patch(
        f"/api/discounts/{discount['id']}", json={"discount_percentage": 100}, headers=admin["headers"]
    )
    assert resp.status_code == 400


def test_delete_clears_product_reference(client, admin, make_product):
    pid = make_product()
    discount = create(client, admin, product_id=pid, discount_percentage=10).json()["data"]
    resp = client.delete(f"/api/discounts/{discount['id']}", headers=admin["headers"])
    assert resp.status_code == 200
    assert "discount_id" not in database.db["product"].find_one({"_id": ObjectId(pid)})
    assert client.get(f"/api/discounts/{discount['id']}").status_code == 404
    assert client.delete(f"/api/discounts/{discount['id']}", headers=admin["headers"]).status_code == 404


def test_active_now_filters_by_window(client, admin, make_product):
    now = utcnow()
    running = make_product(name="Running")
    future = make_product(name="Future")
    ended = make_product(name="Ended")
    paused = make_product(name="Paused")
    create(client, admin, product_id=running, discount_percentage=10, end_date=iso(now + timedelta(days=3)))
    create(client, admin, product_id=future, discount_percentage=10, start_date=iso(now + timedelta(days=2)))
    create(
        client, admin, product_id=ended, discount_percentage=10,
        start_date=iso(now - timedelta(days=5)), end_date=iso(now - timedelta(days=1)),
    )
    create(client, admin, product_id=paused, discount_percentage=10, is_active=False)

    resp = client.get("/api/discounts/active/now")
    assert resp.status_code == 200
    names = [d["product"]["name"] for d in resp.json()["data"]]
    assert names == ["Running"]


def test_list_and_get_populate_product(client, admin, make_product):
    pid = make_product(name="Ukulele", price=60.0)
    discount = create(client, admin, product_id=pid, discount_percentage=10).json()["data"]

    [listed] = client.get("/api/discounts/").json()["data"]
    assert listed["product"]["name"] == "Ukulele"
    assert listed["product"]["price"] == 60.0

    one = client.get(f"/api/discounts/{discount['id']}").json()["data"]
    assert one["product"]["image"] == "https://img.example/p.png"


def test_non_finite_percentage_is_rejected(client, admin, make_product):
    pid = make_product(price=80.0)
    headers = {**admin["headers"], "Content-Type": "application/json"}
    resp = client.post(
        "/api/discounts/create", content=f'{{"product_id": "{pid}", "discount_percentage": NaN}}', headers=headers
    )
    assert resp.status_code == 400
    assert database.db["productdiscount"].count_documents({}) == 0

    discount = create(client, admin, product_id=pid, discount_percentage=10).json()["data"]
    for raw in ("NaN", "Infinity"):
        resp = client.patch(
            f"/api/discounts/{discount['id']}", content=f'{{"discount_percentage": {raw}}}', headers=headers
        )
        assert resp.status_code == 400

    assert database.db["productdiscount"].find_one()["discount_percentage"] == 10
    resp = client.get("/api/products")
    assert resp.status_code == 200
    assert resp.json()["data"][0]["discounted_price"] == 72.0


def test_broadcast_failure_does_not_block_discount(monkeypatch, client, admin, make_user, make_product):
    import notifications

    make_user("fan@melodymix.com", push_token="tok-fan")
    pid = make_product()

    def explode(*args, **kwargs):
        raise RuntimeError("outbox unavailable")

    monkeypatch.setattr(notifications, "enqueue", explode)
    resp = create(client, admin, product_id=pid, discount_percentage=20)
    assert resp.status_code == 201
    assert database.db["product"].find_one({"_id": ObjectId(pid)})["discount_id"] == resp.json()["data"]["id"]
