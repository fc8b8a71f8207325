"""
HTTP layer tests: status codes, error shapes and request parsing.

Business rules are covered by the service tests; these only check that the
routes wire input to the services and map domain errors correctly.
"""


def _create(client, headers, market, **extra):
    body = {
        "retailer_id": market["retailer_id"],
        "wholesaler_id": market["w1"],
        "items": [{"product_id": market["rice"], "quantity": 10, "unit_price_cents": 150}],
    }
    body.update(extra)
    return client.post("/api/orders", json=body, headers=headers)


class TestActorHeader:
    def test_missing_actor_is_401(self, client, market):
        response = client.get("/api/orders/1")
        assert response.status_code == 401
        assert response.get_json()["code"] == "ACTOR_REQUIRED"

    def test_health_needs_no_actor(self, client, db_session):
        response = client.get("/api/health")
        assert response.status_code == 200
        data = response.get_json()
        assert data["status"] == "healthy"
        assert data["checks"]["database"]["status"] == "healthy"

    def test_version(self, client):
        response = client.get("/api/version")
        assert response.status_code == 200
        assert response.get_json()["api_version"] == "1.0.0"


class TestOrderRoutes:
    def test_create_returns_token_once(self, client, auth_headers, market):
        response = _create(client, auth_headers, market)
        assert response.status_code == 201
        data = response.get_json()
        assert data["order"]["status"] == "CREATED"
        assert data["order"]["total_cents"] == 1500
        assert len(data["order"]["delivery_token"]) == 6
        assert data["transition"]["to_state"] == "CREATED"

        fetched = client.get(f"/api/orders/{data['order']['id']}", headers=auth_headers).get_json()
        assert "delivery_token" not in fetched["order"]
        assert "CREDIT_APPROVED" in fetched["allowed_transitions"]

    def test_validation_error_shape(self, client, auth_headers, market):
        response = _create(client, auth_headers, market, items=[])
        assert response.status_code == 400
        data = response.get_json()
        assert set(data) == {"error", "code", "details"}
        assert data["code"] == "VALIDATION_ERROR"

    def test_unknown_order_is_404(self, client, auth_headers, market):
        response = client.get("/api/orders/999999", headers=auth_headers)
        assert response.status_code == 404
        assert response.get_json()["code"] == "ORDER_NOT_FOUND"

    def test_over_limit_is_402(self, client, auth_headers, market):
        client.put(
            f"/api/credit/{market['retailer_id']}/{market['w1']}",
            json={"credit_limit_cents": 1000},
            headers=auth_headers,
        )
        order_id = _create(client, auth_headers, market).get_json()["order"]["id"]

        response = client.post(f"/api/orders/{order_id}/approve-credit", headers=auth_headers)

        assert response.status_code == 402
        data = response.get_json()
        assert data["code"] == "INSUFFICIENT_CREDIT"
        assert data["details"]["shortfall_cents"] == 500
        assert client.get(f"/api/orders/{order_id}", headers=auth_headers).get_json()["order"]["status"] == "CREATED"

    def test_lifecycle_over_http(self, client, auth_headers, market):
        created = _create(client, auth_headers, market).get_json()["order"]
        oid = created["id"]

        for step in ("approve-credit", "reserve-stock", "accept", "start-delivery"):
            response = client.post(f"/api/orders/{oid}/{step}", headers=auth_headers)
            assert response.status_code == 200, step

        wrong = client.post(
            f"/api/orders/{oid}/complete-delivery", json={"delivery_token": "xxxxxx"}, headers=auth_headers
        )
        assert wrong.status_code == 403

        done = client.post(
            f"/api/orders/{oid}/complete-delivery",
            json={"delivery_token": created["delivery_token"]},
            headers=auth_headers,
        )
        assert done.status_code == 200
        assert done.get_json()["order"]["status"] == "DELIVERED"

        history = client.get(f"/api/orders/{oid}/history", headers=auth_headers).get_json()
        assert [t["to_state"] for t in history["transitions"]][-1] == "DELIVERED"
        assert history["transitions"][1]["actor"] == "admin:test"

    def test_invalid_transition_is_409(self, client, auth_headers, market):
        oid = _create(client, auth_headers, market).get_json()["order"]["id"]
        response = client.post(f"/api/orders/{oid}/start-delivery", headers=auth_headers)
        assert response.status_code == 409
        assert response.get_json()["code"] == "INVALID_TRANSITION"

    def test_fail_requires_reason(self, client, auth_headers, market):
        oid = _create(client, auth_headers, market).get_json()["order"]["id"]
        assert client.post(f"/api/orders/{oid}/fail", json={}, headers=auth_headers).status_code == 400
        response = client.post(f"/api/orders/{oid}/fail", json={"reason": "Closed"}, headers=auth_headers)
        assert response.get_json()["order"]["status"] == "FAILED"


class TestBiddingRoutes:
    def test_offer_then_auto_select(self, client, auth_headers, market):
        oid = _create(client, auth_headers, market, wholesaler_id=None).get_json()["order"]["id"]

        response = client.post(
            f"/api/orders/{oid}/offers",
            json={"wholesaler_id": market["w1"], "price_quote_cents": 1400, "eta": "3h"},
            headers=auth_headers,
        )
        assert response.status_code == 201
        assert response.get_json()["offer"]["eta_hours"] == 3.0

        listed = client.get(f"/api/orders/{oid}/offers", headers=auth_headers).get_json()
        assert listed["offers"][0]["rank"] == 1

        awarded = client.post(f"/api/orders/{oid}/offers/auto-select", headers=auth_headers)
        assert awarded.status_code == 200
        assert awarded.get_json()["order"]["status"] == "WHOLESALER_ACCEPTED"

    def test_bad_eta_is_400(self, client, auth_headers, market):
        oid = _create(client, auth_headers, market, wholesaler_id=None).get_json()["order"]["id"]
        response = client.post(
            f"/api/orders/{oid}/offers",
            json={"wholesaler_id": market["w1"], "price_quote_cents": 1400, "eta": "soon"},
            headers=auth_headers,
        )
        assert response.status_code == 400


class TestRoutingRoutes:
    def test_race_over_http(self, client, auth_headers, market):
        oid = _create(client, auth_headers, market).get_json()["order"]["id"]
        client.post(f"/api/orders/{oid}/approve-credit", headers=auth_headers)
        client.post(f"/api/orders/{oid}/reserve-stock", headers=auth_headers)

        routed = client.post(f"/api/orders/{oid}/routing", json={}, headers=auth_headers)
        assert routed.status_code == 201
        rid = routed.get_json()["routing"]["id"]

        first = client.post(f"/api/routing/{rid}/accept", json={"wholesaler_id": market["w1"]}, headers=auth_headers)
        assert first.status_code == 200
        second = client.post(
            f"/api/routing/{rid}/respond",
            json={"wholesaler_id": market["w2"], "response": "ACCEPT"},
            headers=auth_headers,
        )
        assert second.status_code == 409
        assert second.get_json()["code"] == "ALREADY_ACCEPTED"

        status = client.get(f"/api/routing/{rid}", headers=auth_headers).get_json()
        assert status["winner_wholesaler_id"] == market["w1"]
        assert status["counts"]["lost"] == 1

    def test_candidate_ids_must_be_a_list(self, client, auth_headers, market):
        response = client.post("/api/orders/1/routing", json={"candidate_ids": 5}, headers=auth_headers)
        assert response.status_code == 400


class TestCreditRoutes:
    def test_account_entries_and_payments(self, client, auth_headers, market):
        base = f"/api/credit/{market['retailer_id']}/{market['w1']}"

        debit = client.post(f"{base}/entries", json={"entry_type": "debit", "amount_cents": 700}, headers=auth_headers)
        assert debit.status_code == 201

        paid = client.post(f"{base}/payments", json={"amount_cents": 200, "mode": "upi"}, headers=auth_headers)
        assert paid.status_code == 201
        assert paid.get_json()["entry"]["entry_type"] == "CREDIT"

        balance = client.get(f"{base}/balance", headers=auth_headers).get_json()
        assert balance["balance_cents"] == 500

        entries = client.get(f"{base}/entries", headers=auth_headers).get_json()
        assert [e["balance_after_cents"] for e in entries["entries"]] == [700, 500]
        assert entries["audit"]["consistent"] is True

        account = client.get(base, headers=auth_headers).get_json()["account"]
        assert account["available_cents"] == 100_000 - 500

        check = client.post(f"{base}/check", json={"amount_cents": 200_000}, headers=auth_headers).get_json()
        assert check["decision"]["approved"] is False

    def test_bad_as_of(self, client, auth_headers, market):
        base = f"/api/credit/{market['retailer_id']}/{market['w1']}"
        assert client.get(f"{base}/balance?as_of=yesterday", headers=auth_headers).status_code == 400

    def test_block_and_unblock(self, client, auth_headers, market):
        base = f"/api/credit/{market['retailer_id']}/{market['w1']}"
        assert client.post(f"{base}/block", json={}, headers=auth_headers).status_code == 400
        blocked = client.post(f"{base}/block", json={"reason": "Cheque bounced"}, headers=auth_headers)
        assert blocked.get_json()["account"]["block_reason"] == "Cheque bounced"
        unblocked = client.post(f"{base}/unblock", headers=auth_headers)
        assert unblocked.get_json()["account"]["block_reason"] is None


class TestInventoryRoutes:
    def test_receive_count_and_audit(self, client, auth_headers, market):
        base = f"/api/inventory/{market['w1']}/{market['rice']}"

        received = client.post(f"{base}/receive", json={"quantity": 20, "note": "PO-9"}, headers=auth_headers)
        assert received.status_code == 201
        assert received.get_json()["position"]["stock"] == 120

        counted = client.post(f"{base}/count", json={"counted": 118}, headers=auth_headers).get_json()
        assert counted["variance"] == -2

        trail = client.get(f"{base}/audit?limit=5", headers=auth_headers).get_json()
        assert [m["movement_type"] for m in trail["movements"]] == ["COUNT", "RECEIVE"]

        status = client.get(base, headers=auth_headers).get_json()["position"]
        assert status["reconciliation"]["balanced"] is True

    def test_availability_and_diagnostics(self, client, auth_headers, market):
        response = client.post(
            f"/api/inventory/{market['w1']}/availability",
            json={"items": [{"product_id": market["oil"], "quantity": 60}]},
            headers=auth_headers,
        )
        data = response.get_json()
        assert data["available"] is False
        assert data["items"][0]["shortfall"] == 10

        diagnostics = client.get("/api/inventory/diagnostics/negative-stock", headers=auth_headers).get_json()
        assert diagnostics == {"count": 0, "positions": []}


class TestJsonBody:
    def test_array_body_is_400_everywhere(self, client, auth_headers, market):
        urls = [
            "/api/orders",
            "/api/orders/1/offers",
            "/api/orders/1/routing",
            "/api/routing/1/accept",
            "/api/routing/1/respond",
            f"/api/credit/{market['retailer_id']}/{market['w1']}/payments",
            f"/api/inventory/{market['w1']}/{market['rice']}/receive",
        ]
        for url in urls:
            response = client.post(url, json=[1], headers=auth_headers)
            assert response.status_code == 400, url
            assert response.get_json()["code"] == "VALIDATION_ERROR", url
