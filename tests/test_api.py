"""
Tests for the HTTP and WebSocket surface.

Tests cover:
- Health probes
- POST /webhook ingest (flat, envelope, invalid JSON)
- Conversation list and message retrieval with read-marking
- Send / status endpoints and their error codes
- Real-time events over /ws
- Metrics exposition and request id header
"""

import json


def flat_payload(*messages, statuses=None) -> dict:
    payload = {"messages": list(messages)}
    if statuses is not None:
        payload["statuses"] = statuses
    return payload


def message(primary_id, sender="111", timestamp="1000", body="hi") -> dict:
    return {"id": primary_id, "from": sender, "timestamp": timestamp, "text": {"body": body}}


def post_payload(client, payload):
    response = client.post(
        "/webhook",
        content=json.dumps(payload),
        headers={"Content-Type": "application/json"},
    )
    assert response.status_code == 200
    return response.json()


class TestHealth:
    def test_live(self, client):
        response = client.get("/health/live")
        assert response.status_code == 200
        assert response.json()["status"] == "ok"

    def test_ready(self, client):
        response = client.get("/health/ready")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "ready"
        assert data["feed"] in ("running", "idle")


class TestWebhook:
    def test_single_payload_object(self, client):
        report = post_payload(client, flat_payload(message("m1")))

        assert report["messages_upserted"] == 1
        assert report["errors_skipped"] == 0

    def test_duplicate_delivery(self, client):
        post_payload(client, flat_payload(message("m1")))
        report = post_payload(client, flat_payload(message("m1")))

        assert report["messages_upserted"] == 0
        assert report["messages_duplicate"] == 1

    def test_array_of_payloads_with_statuses(self, client):
        report = post_payload(client, [
            flat_payload(message("m1")),
            flat_payload(statuses=[{"id": "m1", "status": "delivered"}, {"id": "zz", "status": "read"}]),
        ])

        assert report["messages_upserted"] == 1
        assert report["statuses_patched"] == 1
        assert report["statuses_unmatched"] == 1

    def test_envelope_payload(self, client):
        payload = {"entry": [{"changes": [{"value": {
            "metadata": {"phone_number_id": "biz"},
            "contacts": [{"wa_id": "111", "profile": {"name": "Ravi"}}],
            "messages": [message("wamid.1")],
        }}]}]}

        post_payload(client, payload)
        chats = client.get("/api/chats").json()

        assert chats[0]["display_name"] == "Ravi"

    def test_invalid_json(self, client):
        response = client.post("/webhook", content="not valid json", headers={"Content-Type": "application/json"})
        assert response.status_code == 422

    def test_non_utf8_body(self, client):
        response = client.post("/webhook", content=b"\xff\xfe[", headers={"Content-Type": "application/json"})
        assert response.status_code == 422

    def test_wrongly_typed_item_does_not_fail_request(self, client):
        report = post_payload(client, flat_payload(
            {"id": "m1", "from": "111", "timestamp": "1000", "text": {"body": 5}},
            message("m2"),
        ))

        assert report["errors_skipped"] == 1
        assert report["messages_upserted"] == 1

    def test_malformed_items_are_counted(self, client):
        report = post_payload(client, flat_payload({"from": "111"}, message("m2")))

        assert report["messages_upserted"] == 1
        assert report["errors_skipped"] == 1


class TestConversations:
    def test_chats_summary(self, client):
        post_payload(client, flat_payload(
            message("m1", timestamp="1000", body="first"),
            message("m2", timestamp="2000", body="second"),
        ))

        response = client.get("/api/chats")

        assert response.status_code == 200
        [chat] = response.json()
        assert chat["conversation_id"] == "111"
        assert chat["last_message"] == "second"
        assert chat["last_occurred_at"] == "1970-01-01T00:33:20.000Z"
        assert chat["unread_count"] == 2

    def test_messages_are_ordered_and_marked_read(self, client):
        post_payload(client, flat_payload(
            message("m2", timestamp="2000"),
            message("m1", timestamp="1000"),
        ))

        response = client.get("/api/messages/111")

        assert response.status_code == 200
        data = response.json()
        assert [record["primary_id"] for record in data] == ["m1", "m2"]
        assert data[0]["direction"] == "inbound"
        assert client.get("/api/chats").json()[0]["unread_count"] == 0

    def test_unknown_conversation(self, client):
        response = client.get("/api/messages/nobody")
        assert response.status_code == 200
        assert response.json() == []


class TestSendAndStatus:
    def test_send(self, client):
        response = client.post("/api/send", json={"conversation_id": "111", "body": "hello"})

        assert response.status_code == 201
        data = response.json()
        assert data["direction"] == "outbound"
        assert data["status"] == "sent"
        assert data["body"] == "hello"
        assert data["primary_id"].startswith("local-")

    def test_send_with_legacy_field_names(self, client):
        response = client.post("/api/send", json={"wa_id": "111", "text": "hello"})
        assert response.status_code == 201
        assert response.json()["conversation_id"] == "111"

    def test_send_missing_body(self, client):
        response = client.post("/api/send", json={"conversation_id": "111"})

        assert response.status_code == 400
        assert client.get("/api/chats").json() == []

    def test_status_update(self, client):
        sent = client.post("/api/send", json={"conversation_id": "111", "body": "hello"}).json()

        response = client.post("/api/status", json={"id": sent["primary_id"], "status": "delivered"})

        assert response.status_code == 200
        assert response.json() == {"success": True, "outcome": "updated"}
        messages = client.get("/api/messages/111").json()
        assert messages[0]["status"] == "delivered"

    def test_status_not_found(self, client):
        response = client.post("/api/status", json={"id": "ghost", "status": "read"})

        assert response.status_code == 404
        assert response.json() == {"detail": "message not found"}

    def test_status_invalid(self, client):
        response = client.post("/api/status", json={"id": "m1", "status": "teleported"})
        assert response.status_code == 400

    def test_test_message(self, client):
        response = client.get("/api/test-message", params={"wa_id": "555", "text": "ping"})

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["emitted"]["conversation_id"] == "555"
        assert data["emitted"]["direction"] == "inbound"


class TestRealtime:
    def test_send_and_status_events(self, client):
        with client.websocket_connect("/ws") as websocket:
            sent = client.post("/api/send", json={"conversation_id": "111", "body": "hello"}).json()
            new_message = websocket.receive_json()

            client.post("/api/status", json={"id": sent["primary_id"], "status": "delivered"})
            status_changed = websocket.receive_json()

        assert new_message["event"] == "new_message"
        assert new_message["conversation_id"] == "111"
        assert new_message["record"]["primary_id"] == sent["primary_id"]
        assert status_changed["event"] == "message_status"
        assert status_changed["message_id"] == sent["primary_id"]
        assert status_changed["status"] == "delivered"

    def test_webhook_ingest_is_streamed(self, client):
        with client.websocket_connect("/ws") as websocket:
            post_payload(client, flat_payload(message("m1")))
            event = websocket.receive_json()

        assert event["event"] == "new_message"
        assert event["record"]["primary_id"] == "m1"


class TestObservability:
    def test_request_id_header(self, client):
        response = client.get("/health/live")
        assert "x-request-id" in response.headers

    def test_metrics(self, client):
        post_payload(client, flat_payload(message("m1")))

        response = client.get("/metrics")

        assert response.status_code == 200
        assert "ingest_items_total" in response.text
        assert "http_requests_total" in response.text
