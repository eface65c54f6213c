# tests/test_api.py

"""Test HTTP endpoints end to end."""

import pytest
from fastapi.testclient import TestClient

from webhook_api.config import Settings
from webhook_api.main import create_app


# End-to-end: create, replay, list
def test_webhook_end_to_end(client, post_webhook, message_payload):
    payload = message_payload()

    first = post_webhook(payload)
    assert first.status_code == 200
    assert first.json() == {"status": "ok"}

    second = post_webhook(payload)
    assert second.status_code == 200
    assert second.json() == {"status": "ok"}

    response = client.get("/messages", params={"limit": "10"})
    assert response.status_code == 200
    body = response.json()
    assert body["total"] == 1
    assert body["limit"] == 10
    assert body["offset"] == 0
    assert len(body["data"]) == 1
    item = body["data"][0]
    assert item["message_id"] == "m1"
    assert item["from"] == "+10000000001"
    assert item["to"] == "+10000000002"
    assert item["ts"] == "2025-01-15T10:00:00Z"
    assert item["text"] == "hi"
    assert item["created_at"].endswith("Z")


def test_webhook_invalid_signature(post_webhook, message_payload):
    response = post_webhook(message_payload(), signature="0" * 64)
    assert response.status_code == 401
    assert response.json() == {"detail": "invalid signature"}


def test_webhook_missing_signature(post_webhook, message_payload):
    response = post_webhook(message_payload(), signature="")
    assert response.status_code == 401


def test_webhook_invalid_json(post_webhook):
    response = post_webhook(b"{oops")
    assert response.status_code == 422
    assert response.json() == {"detail": "invalid json"}


def test_webhook_schema_error(post_webhook, message_payload):
    response = post_webhook(message_payload(ts="2025-01-15T10:00:00.000Z"))
    assert response.status_code == 422
    detail = response.json()["detail"]
    assert isinstance(detail, list)
    assert detail[0]["field"] == "ts"


def test_webhook_secret_missing(store, message_payload):
    app = create_app(settings=Settings(database_url="sqlite://", webhook_secret=""), store=store)
    with TestClient(app) as client:
        response = client.post("/webhook", json=message_payload(), headers={"X-Signature": "x"})
        assert response.status_code == 503
        assert response.json() == {"detail": "service not ready"}

        ready = client.get("/health/ready")
        assert ready.status_code == 503
        assert ready.json() == {"status": "not-ready", "db": True, "secret": False}

        metrics = client.get("/metrics").text
        assert 'webhook_requests_total{result="secret_missing"} 1' in metrics


def test_messages_filters(client, post_webhook, message_payload):
    post_webhook(message_payload(message_id="a", from_="+100", text="Hello there", ts="2025-01-01T00:00:00Z"))
    post_webhook(message_payload(message_id="b", from_="+200", text="say HELLO", ts="2025-01-02T00:00:00Z"))
    post_webhook(message_payload(message_id="c", from_="+100", text=None, ts="2025-01-03T00:00:00Z"))
    post_webhook(message_payload(message_id="d", from_="+100", text="goodbye", ts="2025-01-03T00:00:00Z"))

    by_sender = client.get("/messages", params={"from": "+100"}).json()
    assert [m["message_id"] for m in by_sender["data"]] == ["a", "c", "d"]
    assert by_sender["total"] == 3

    by_text = client.get("/messages", params={"q": "hello"}).json()
    assert [m["message_id"] for m in by_text["data"]] == ["a", "b"]

    since = client.get("/messages", params={"since": "2025-01-02T00:00:00Z"}).json()
    assert [m["message_id"] for m in since["data"]] == ["b", "c", "d"]

    page = client.get("/messages", params={"limit": "1", "offset": "2"}).json()
    assert page["total"] == 4
    assert [m["message_id"] for m in page["data"]] == ["c"]

    defaults = client.get("/messages").json()
    assert (defaults["limit"], defaults["offset"]) == (50, 0)


@pytest.mark.parametrize("params", [{"limit": "0"}, {"limit": "101"}, {"offset": "-1"}, {"limit": "ten"}])
def test_messages_bad_pagination(client, params):
    response = client.get("/messages", params=params)
    assert response.status_code == 422
    assert response.json() == {"detail": "limit must be 1-100 and offset must be >=0"}


def test_messages_bad_since(client):
    response = client.get("/messages", params={"since": "yesterday"})
    assert response.status_code == 422
    assert response.json() == {"detail": "invalid since"}


def test_stats(client, post_webhook, message_payload):
    empty = client.get("/stats").json()
    assert empty == {
        "total_messages": 0,
        "senders_count": 0,
        "messages_per_sender": [],
        "first_message_ts": None,
        "last_message_ts": None,
    }

    post_webhook(message_payload(message_id="m1", from_="+100", ts="2025-01-02T00:00:00Z"))
    post_webhook(message_payload(message_id="m2", from_="+100", ts="2025-01-01T00:00:00Z"))
    post_webhook(message_payload(message_id="m3", from_="+200", ts="2025-01-03T00:00:00Z"))

    stats = client.get("/stats").json()
    assert stats["total_messages"] == 3
    assert stats["senders_count"] == 2
    assert stats["messages_per_sender"] == [{"from": "+100", "count": 2}, {"from": "+200", "count": 1}]
    assert stats["first_message_ts"] == "2025-01-01T00:00:00Z"
    assert stats["last_message_ts"] == "2025-01-03T00:00:00Z"


def test_health_endpoints(client):
    live = client.get("/health/live")
    assert live.status_code == 200
    assert live.json() == {"status": "live"}

    ready = client.get("/health/ready")
    assert ready.status_code == 200
    assert ready.json() == {"status": "ready"}


def test_ready_reports_db_failure(client, store, monkeypatch):
    monkeypatch.setattr(store, "health_check", lambda: False)
    ready = client.get("/health/ready")
    assert ready.status_code == 503
    assert ready.json() == {"status": "not-ready", "db": False, "secret": True}


def test_metrics_endpoint_counts_requests(client, post_webhook, message_payload):
    post_webhook(message_payload())
    post_webhook(message_payload())
    post_webhook(message_payload(), signature="bad")
    client.get("/messages", params={"limit": "0"})
    client.get("/does-not-exist")

    response = client.get("/metrics")
    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/plain")
    text = response.text

    assert 'http_requests_total{path="/webhook",status="200"} 2' in text
    assert 'http_requests_total{path="/webhook",status="401"} 1' in text
    assert 'http_requests_total{path="/messages",status="422"} 1' in text
    assert 'http_requests_total{path="unmatched",status="404"} 1' in text
    assert 'webhook_requests_total{result="created"} 1' in text
    assert 'webhook_requests_total{result="duplicate"} 1' in text
    assert 'webhook_requests_total{result="invalid_signature"} 1' in text
    # /metrics itself is recorded after its response is rendered
    assert "request_latency_ms_count 5" in text
    assert 'request_latency_ms_bucket{le="+Inf"} 5' in text


def test_storage_failure_on_read_is_500(client, store, monkeypatch):
    from webhook_api.errors import StorageUnavailable

    def broken_query(filters):
        raise StorageUnavailable()

    monkeypatch.setattr(store, "query", broken_query)
    response = client.get("/messages")
    assert response.status_code == 500
    assert response.json() == {"detail": "internal server error"}


def test_unmatched_paths_share_one_label(client):
    client.get("/nope/1")
    client.get('/nope/"quoted"')

    text = client.get("/metrics").text
    assert 'http_requests_total{path="unmatched",status="404"} 2' in text
    assert "/nope" not in text


def test_unexpected_error_on_read_is_json_500(client, store, monkeypatch):
    def exploding_aggregate():
        raise RuntimeError("boom")

    monkeypatch.setattr(store, "aggregate", exploding_aggregate)
    response = client.get("/stats")
    assert response.status_code == 500
    assert response.headers["content-type"].startswith("application/json")
    assert response.json() == {"detail": "internal server error"}

    text = client.get("/metrics").text
    assert 'http_requests_total{path="/stats",status="500"} 1' in text
