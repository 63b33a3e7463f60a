from __future__ import annotations

from datetime import timedelta

from tests.helpers import UNKNOWN_ID, as_user


def _create(api, client, service, now, **extra):
    payload = {"service_id": service.id, "booking_date": (now + timedelta(days=3)).isoformat()}
    payload.update(extra)
    return api.post("/api/bookings", json=payload, headers=as_user(client))


class TestIdentity:
    def test_missing_identity_header(self, api) -> None:
        response = api.get("/api/bookings")
        assert response.status_code == 401

    def test_malformed_identity(self, api) -> None:
        response = api.get("/api/bookings", headers={"X-User-ID": "not-a-ulid"})
        assert response.status_code == 401

    def test_unknown_user(self, api) -> None:
        response = api.get("/api/bookings", headers={"X-User-ID": UNKNOWN_ID})
        assert response.status_code == 401
        assert response.json()["detail"] == "Unknown user"


class TestBookingLifecycle:
    def test_create_booking(self, api, client, provider, service, sink, now) -> None:
        response = _create(api, client, service, now, notes="Gate code 1234")

        assert response.status_code == 201
        body = response.json()
        assert body["status"] == "pending"
        assert body["total_price"] == 200.0
        assert body["notes"] == "Gate code 1234"
        assert body["payment"]["status"] == "pending"
        assert body["payment"]["service_fee"] == 20.0
        assert body["payment"]["net_amount"] == 180.0
        assert sink.types_for(provider.id) == ["new_booking"]

    def test_unknown_fields_are_rejected(self, api, client, service, now) -> None:
        response = _create(api, client, service, now, discount="50%")
        assert response.status_code == 422

    def test_booking_in_the_past(self, api, client, service, now) -> None:
        payload = {"service_id": service.id, "booking_date": (now - timedelta(hours=1)).isoformat()}
        response = api.post("/api/bookings", json=payload, headers=as_user(client))

        assert response.status_code == 400
        assert response.json()["detail"]["code"] == "ValidationException"

    def test_provider_cannot_book_own_service(self, api, provider, service, now) -> None:
        response = _create(api, provider, service, now)
        assert response.status_code == 422

    def test_full_day_returns_conflict(self, api, client, provider, service_factory, now) -> None:
        capped = service_factory(provider, max_bookings=1)
        assert _create(api, client, capped, now).status_code == 201

        response = _create(api, client, capped, now)

        assert response.status_code == 409
        assert response.json()["detail"]["code"] == "RESOURCE_EXHAUSTED"

    def test_accept_and_complete(self, api, client, provider, service, sink, now) -> None:
        booking_id = _create(api, client, service, now).json()["id"]
        pay = api.post(
            "/api/payments/process",
            json={
                "booking_id": booking_id,
                "method": "credit_card",
                "credit_card": {
                    "number": "4111111111111111",
                    "holder_name": "Ana Souza",
                    "expiry_month": 12,
                    "expiry_year": 2030,
                    "cvv": "123",
                },
                "billing_address": {
                    "street": "Rua Augusta",
                    "number": "100",
                    "neighborhood": "Consolacao",
                    "city": "Sao Paulo",
                    "state": "SP",
                    "zip_code": "01305-000",
                },
            },
            headers=as_user(client),
        )
        assert pay.status_code == 200

        accepted = api.post(f"/api/bookings/{booking_id}/accept", headers=as_user(provider))
        completed = api.post(
            f"/api/bookings/{booking_id}/status",
            json={"status": "completed"},
            headers=as_user(provider),
        )

        assert accepted.status_code == 200
        assert accepted.json()["status"] == "accepted"
        assert completed.status_code == 200
        assert completed.json()["status"] == "completed"
        assert completed.json()["payment"]["escrow_release_date"] is not None
        assert "review_request" in sink.types_for(client.id)

    def test_client_cannot_accept(self, api, client, service, now) -> None:
        booking_id = _create(api, client, service, now).json()["id"]

        response = api.post(f"/api/bookings/{booking_id}/accept", headers=as_user(client))

        assert response.status_code == 403
        assert response.json()["detail"]["code"] == "ForbiddenException"

    def test_decline_without_body(self, api, client, provider, service, sink, now) -> None:
        booking_id = _create(api, client, service, now).json()["id"]

        response = api.post(f"/api/bookings/{booking_id}/decline", headers=as_user(provider))

        assert response.status_code == 200
        assert response.json()["status"] == "declined"
        assert response.json()["payment"]["status"] == "failed"
        assert sink.types_for(client.id) == ["booking_declined"]

    def test_decline_twice_is_a_conflict(self, api, client, provider, service, now) -> None:
        booking_id = _create(api, client, service, now).json()["id"]
        api.post(
            f"/api/bookings/{booking_id}/decline",
            json={"reason": "Fully booked"},
            headers=as_user(provider),
        )

        response = api.post(f"/api/bookings/{booking_id}/decline", headers=as_user(provider))

        assert response.status_code == 409
        assert response.json()["detail"]["code"] == "INVALID_STATE"
        assert response.json()["detail"]["details"]["current_status"] == "declined"

    def test_client_cancels(self, api, client, provider, service, sink, now) -> None:
        booking_id = _create(api, client, service, now).json()["id"]

        response = api.post(
            f"/api/bookings/{booking_id}/status",
            json={"status": "cancelled", "reason": "Plans changed"},
            headers=as_user(client),
        )

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "cancelled"
        assert body["cancellation_reason"] == "Plans changed"
        assert body["cancelled_by"] == client.id
        assert sink.types_for(provider.id) == ["new_booking", "booking_cancelled"]

    def test_invalid_status_target(self, api, client, service, now) -> None:
        booking_id = _create(api, client, service, now).json()["id"]
        response = api.post(
            f"/api/bookings/{booking_id}/status",
            json={"status": "accepted"},
            headers=as_user(client),
        )
        assert response.status_code == 422


class TestReads:
    def test_outsider_cannot_read(self, api, client, service, user_factory, now) -> None:
        booking_id = _create(api, client, service, now).json()["id"]
        response = api.get(f"/api/bookings/{booking_id}", headers=as_user(user_factory()))
        assert response.status_code == 403

    def test_malformed_booking_id(self, api, client) -> None:
        response = api.get("/api/bookings/not-a-ulid", headers=as_user(client))
        assert response.status_code == 422

    def test_unknown_booking(self, api, client) -> None:
        response = api.get(f"/api/bookings/{UNKNOWN_ID}", headers=as_user(client))
        assert response.status_code == 404

    def test_list_by_role(self, api, client, provider, service, now) -> None:
        _create(api, client, service, now)
        _create(api, client, service, now)

        as_client = api.get("/api/bookings", headers=as_user(client)).json()
        as_provider = api.get(
            "/api/bookings", params={"role": "provider"}, headers=as_user(provider)
        ).json()
        provider_as_client = api.get("/api/bookings", headers=as_user(provider)).json()

        assert as_client["total"] == 2
        assert as_provider["total"] == 2
        assert provider_as_client["total"] == 0
        assert as_client["has_next"] is False

    def test_list_filtered_by_status(self, api, client, provider, service, now) -> None:
        first = _create(api, client, service, now).json()["id"]
        _create(api, client, service, now)
        api.post(f"/api/bookings/{first}/accept", headers=as_user(provider))

        response = api.get(
            "/api/bookings", params={"status": "accepted"}, headers=as_user(client)
        )

        assert [item["id"] for item in response.json()["items"]] == [first]
