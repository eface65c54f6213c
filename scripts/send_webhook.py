import json
import os
import sys
from datetime import datetime, timezone

import httpx

from webhook_api.security import compute_signature


secret = os.environ.get("WEBHOOK_SECRET", "testsecret")
base_url = os.environ.get("BASE_URL", "http://localhost:8000")


def encode(body: dict) -> bytes:
    return json.dumps(body, separators=(",", ":")).encode("utf-8")


def send(client: httpx.Client, body: dict, secret: str) -> httpx.Response:
    raw = encode(body)
    sig = compute_signature(secret, raw)
    res = client.post(
        "/webhook",
        content=raw,
        headers={"Content-Type": "application/json", "X-Signature": sig},
    )
    print(f"POST /webhook {res.status_code} -> {res.text}")
    return res


def get(client: httpx.Client, path: str) -> httpx.Response:
    res = client.get(path)
    print(f"GET {path} -> {res.status_code}\n{res.text}")
    return res


def smoke_message() -> dict:
    return {
        "message_id": "m-smoke-1",
        "from": "+10000000001",
        "to": "+10000000002",
        "ts": datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ"),
        "text": "smoke test",
    }


def run(client: httpx.Client, secret: str) -> bool:
    """Create, replay, then read back. True when every call answered 200."""
    message = smoke_message()

    print("Sending first webhook (should create)")
    first = send(client, message, secret)

    print("Sending duplicate webhook (should be idempotent)")
    second = send(client, message, secret)

    responses = [
        first,
        second,
        get(client, "/messages?limit=10&offset=0"),
        get(client, "/stats"),
        get(client, "/metrics"),
    ]
    return all(r.status_code == 200 for r in responses)


def main() -> int:
    with httpx.Client(base_url=base_url, timeout=10.0) as client:
        ok = run(client, secret)
    return 0 if ok else 1


if __name__ == "__main__":
    sys.exit(main())
