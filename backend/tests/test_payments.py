"""
Checkout confirmation: each gift settles in its own transaction, anonymous
checkouts are attributed to the shared guest identity.
"""
from conftest import create_gift


def test_anonymous_checkout_settles_remaining_balances(client, admin_headers, guest_headers):
    cafetera = create_gift(client, admin_headers)
    vajilla = create_gift(client, admin_headers, name="Vajilla", price=250)
    client.post(f"/gifts/{cafetera['id']}/contribute", json={"amount": 30}, headers=guest_headers)

    res = client.post(
        "/payments/confirm",
        json={
            "gift_ids": [cafetera["id"], vajilla["id"]],
            "payment_method": "yape",
            "payment_reference": "OP-2291",
        },
    )

    assert res.status_code == 200, res.text
    body = res.json()
    assert body["failed"] == []
    assert body["payment_method"] == "yape"
    assert body["payment_reference"] == "OP-2291"
    assert [(c["gift_id"], c["amount"]) for c in body["confirmed"]] == [
        (cafetera["id"], 70.0),
        (vajilla["id"], 250.0),
    ]
    assert all(c["is_fully_funded"] for c in body["confirmed"])

    detail = client.get(f"/gifts/{cafetera['id']}").json()
    assert detail["is_contributed"] is True
    assert detail["contributions"][0]["username"] == "guest"


def test_guest_identity_is_reused(client, admin_headers):
    first = create_gift(client, admin_headers, name="Mantel")
    second = create_gift(client, admin_headers, name="Cubiertos")

    a = client.post("/payments/confirm", json={"gift_ids": [first["id"]], "amounts": [10]}).json()
    b = client.post("/payments/confirm", json={"gift_ids": [second["id"]], "amounts": [10]}).json()

    assert a["contributor_id"] == b["contributor_id"]


def test_authenticated_checkout_uses_caller(client, admin_headers, guest_headers):
    gift = create_gift(client, admin_headers)

    body = client.post(
        "/payments/confirm",
        json={"gift_ids": [gift["id"]], "amounts": ["25.50"], "note": "Para el desayuno"},
        headers=guest_headers,
    ).json()

    assert body["confirmed"][0]["amount"] == 25.5
    assert body["confirmed"][0]["remaining"] == 74.5
    entry = client.get(f"/gifts/{gift['id']}").json()["contributions"][0]
    assert entry["username"] == "lucia"
    assert entry["note"] == "Para el desayuno"


def test_partial_failure_keeps_successful_gifts(client, admin_headers, guest_headers):
    funded = create_gift(client, admin_headers, name="Licuadora")
    open_gift = create_gift(client, admin_headers, name="Tostadora", price=60)
    client.post(f"/gifts/{funded['id']}/contribute", json={"amount": 100}, headers=guest_headers)

    res = client.post(
        "/payments/confirm",
        json={"gift_ids": [funded["id"], open_gift["id"], 9999], "amounts": [None, 60]},
        headers=guest_headers,
    )

    assert res.status_code == 200
    body = res.json()
    assert [c["gift_id"] for c in body["confirmed"]] == [open_gift["id"]]
    failures = {f["gift_id"]: f for f in body["failed"]}
    assert failures[funded["id"]]["error"] == "already_fully_funded"
    assert failures[funded["id"]]["max_amount"] == 0.0
    assert failures[9999]["error"] == "gift_not_found"
    assert failures[9999]["max_amount"] is None


def test_all_failed_returns_400(client, admin_headers, guest_headers):
    gift = create_gift(client, admin_headers)

    res = client.post(
        "/payments/confirm",
        json={"gift_ids": [gift["id"]], "amounts": [500]},
        headers=guest_headers,
    )

    assert res.status_code == 400
    detail = res.json()["detail"]
    assert detail["message"] == "No gift could be processed"
    assert detail["failed"][0]["error"] == "amount_exceeds_price"
    assert detail["failed"][0]["max_amount"] == 100.0
    assert client.get(f"/gifts/{gift['id']}").json()["contributions"] == []


def test_invalid_amount_in_checkout(client, admin_headers, guest_headers):
    gift = create_gift(client, admin_headers)

    res = client.post(
        "/payments/confirm",
        json={"gift_ids": [gift["id"]], "amounts": ["-3"]},
        headers=guest_headers,
    )

    assert res.status_code == 400
    assert res.json()["detail"]["failed"][0]["error"] == "invalid_amount"


def test_request_validation(client):
    assert client.post("/payments/confirm", json={"gift_ids": []}).status_code == 422
    res = client.post("/payments/confirm", json={"gift_ids": [1], "amounts": [10, 20]})
    assert res.status_code == 422


def test_unknown_gift_ids_do_not_accumulate_locks(client):
    res = client.post("/payments/confirm", json={"gift_ids": list(range(1000, 1200))})

    assert res.status_code == 400
    assert len(res.json()["detail"]["failed"]) == 200
    assert client.app.state.accounting._locks == {}
