def _json(r):
    assert r.is_json is True
    return r.get_json()


def test_health(client):
    r = client.get("/health")
    assert r.status_code == 200
    assert _json(r)["ok"] is True


def test_checkout_and_payment_confirmation(client, vendors, make_product):
    v1, v2 = vendors
    p1 = make_product(v1, price="1000.00", stock=2)
    p2 = make_product(v2, price="500.00", stock=2)

    r = client.post(
        "/api/orders",
        json={"customer_id": 7, "lines": [{"product_id": p1.id, "qty": 1}, {"product_id": p2.id, "qty": 1}]},
        headers={"Idempotency-Key": "cart-abc"},
    )
    assert r.status_code == 201
    order = _json(r)["order"]
    assert order["total_amount"] == "1500.00"
    payouts = {row["vendor_id"]: row["amount"] for row in order["vendor_payouts"]}
    assert payouts == {v1.id: "900.00", v2.id: "425.00"}

    r = client.post(f"/api/orders/{order['id']}/payment-confirmed", json={"payment_ref": "pay_1"})
    assert r.status_code == 200
    assert _json(r)["order"]["payment_status"] == "completed"

    r = client.get(f"/api/vendors/{v1.id}/wallet")
    assert _json(r)["wallet"]["pending"] == "900.00"

    r = client.get(f"/api/vendors/{v1.id}/ledger?type=sale")
    data = _json(r)
    assert data["total"] == 1
    assert data["items"][0]["amount"] == "900.00"


def test_validation_and_not_found_errors(client, vendors, make_product):
    v1, _ = vendors
    p = make_product(v1, price="10.00", stock=1, title="Lamp")

    r = client.post("/api/orders", json={"lines": []})
    assert r.status_code == 400
    assert _json(r)["error"] == "validation_error"

    r = client.post("/api/orders", json={"lines": [{"product_id": p.id, "qty": 3}]})
    assert r.status_code == 409
    body = _json(r)
    assert body["error"] == "insufficient_stock"
    assert body["details"]["shortfalls"][0]["title"] == "Lamp"

    r = client.get("/api/orders/999")
    assert r.status_code == 404
    assert _json(r)["error"] == "not_found"

    r = client.get("/nope")
    assert r.status_code == 404
    assert _json(r)["ok"] is False


def test_payout_flow_over_http(client, vendors):
    v1, _ = vendors

    r = client.post("/admin/adjustments", json={"vendor_id": v1.id, "amount": "500.00", "reason": "opening"})
    assert r.status_code == 201

    r = client.post(f"/api/vendors/{v1.id}/payouts", json={"amount": "600.00"})
    assert r.status_code == 422
    assert _json(r)["error"] == "insufficient_balance"

    r = client.post(f"/api/vendors/{v1.id}/payouts", json={"amount": "300.00"}, headers={"Idempotency-Key": "k1"})
    assert r.status_code == 201
    payout_id = _json(r)["payout"]["id"]

    r = client.post(f"/api/vendors/{v1.id}/payouts", json={"amount": "300.00"}, headers={"Idempotency-Key": "k1"})
    assert r.status_code == 200
    body = _json(r)
    assert body["duplicate"] is True
    assert body["existing"]["id"] == payout_id

    r = client.post(f"/admin/payouts/{payout_id}", json={"action": "approve"}, headers={"X-Actor": "ops@shop"})
    assert _json(r)["payout"]["status"] == "APPROVED"

    r = client.post(f"/admin/payouts/{payout_id}", json={"action": "complete"})
    assert r.status_code == 400

    r = client.post(f"/admin/payouts/{payout_id}", json={"action": "complete", "external_transaction_id": "UTR123"})
    assert r.status_code == 200
    assert _json(r)["payout"]["external_transaction_id"] == "UTR123"

    r = client.post(f"/admin/payouts/{payout_id}", json={"action": "cancel"})
    assert r.status_code == 409
    assert _json(r)["error"] == "invalid_transition"

    r = client.get(f"/api/vendors/{v1.id}/wallet")
    wallet = _json(r)["wallet"]
    assert wallet["total"] == "200.00"
    assert wallet["withdrawable"] == "200.00"

    r = client.get(f"/admin/audit?vendor_id={v1.id}")
    actions = [row["action"] for row in _json(r)["audit"]]
    assert "payout.complete" in actions and "payout.approve" in actions


def test_frozen_wallet_refuses_payouts(client, vendors):
    v1, _ = vendors
    client.post("/admin/adjustments", json={"vendor_id": v1.id, "amount": "500.00", "reason": "opening"})

    r = client.post(f"/admin/wallets/{v1.id}/freeze", json={"reason": "kyc"})
    assert _json(r)["wallet"]["status"] == "FROZEN"

    r = client.post(f"/api/vendors/{v1.id}/payouts", json={"amount": "200.00"})
    assert r.status_code == 403
    assert _json(r)["error"] == "wallet_frozen"


def test_admin_and_cron_require_bearer_token(app, client):
    app.config["ADMIN_API_TOKEN"] = "admin-secret"
    app.config["CRON_SECRET"] = "cron-secret"

    assert client.get("/admin/payouts").status_code == 401
    assert client.get("/admin/payouts", headers={"Authorization": "Bearer wrong"}).status_code == 401
    assert client.get("/admin/payouts", headers={"Authorization": "Bearer admin-secret"}).status_code == 200

    assert client.post("/api/orders/1/delivered").status_code == 401

    assert client.post("/cron/clear-funds").status_code == 401
    r = client.post("/cron/clear-funds", headers={"Authorization": "Bearer cron-secret"})
    assert r.status_code == 200
    assert _json(r)["sweep"]["locked"] is False


def test_reconciliation_endpoints(client, vendors):
    v1, _ = vendors
    client.post("/admin/adjustments", json={"vendor_id": v1.id, "amount": "10.00", "reason": "x"})

    r = client.post("/admin/reconciliation/run", json={})
    assert _json(r)["report"]["drift"] == []

    r = client.get("/admin/reconciliation?status=all")
    assert _json(r)["issues"] == []

    r = client.get("/admin/reconciliation?status=weird")
    assert r.status_code == 400


def test_dispute_hold_endpoints(client, vendors):
    v1, _ = vendors
    client.post("/admin/adjustments", json={"vendor_id": v1.id, "amount": "100.00", "reason": "seed"})

    r = client.post("/admin/holds", json={"vendor_id": v1.id, "amount": "40.00", "dispute_id": "dp_9"})
    assert r.status_code == 201
    assert _json(r)["entry"]["status"] == "PENDING"

    r = client.post("/admin/holds/dp_9/release", json={"vendor_id": v1.id, "outcome": "won"})
    assert _json(r)["entry"]["status"] == "VOIDED"


def test_payout_posts_without_key_are_separate_requests(client, vendors):
    v1, _ = vendors
    client.post("/admin/adjustments", json={"vendor_id": v1.id, "amount": "500.00", "reason": "opening"})

    first = client.post(f"/api/vendors/{v1.id}/payouts", json={"amount": "150.00"})
    second = client.post(f"/api/vendors/{v1.id}/payouts", json={"amount": "150.00"})

    assert first.status_code == 201
    assert second.status_code == 201
    assert _json(first)["payout"]["id"] != _json(second)["payout"]["id"]
