from fastapi import FastAPI, Request
from fastapi.testclient import TestClient

from api.middleware import LoggingMiddleware, RequestIDMiddleware


def _app() -> FastAPI:
    app = FastAPI()
    app.add_middleware(LoggingMiddleware)
    app.add_middleware(RequestIDMiddleware)

    @app.get("/echo")
    async def echo(request: Request):
        return {"request_id": request.state.request_id, "tenant_id": request.state.tenant_id}

    return app


def test_request_id_is_propagated_and_tenant_read():
    client = TestClient(_app())

    response = client.get("/echo", headers={"X-Request-ID": "req-42", "X-Tenant-ID": " acme "})

    assert response.headers["X-Request-ID"] == "req-42"
    assert response.json() == {"request_id": "req-42", "tenant_id": "acme"}
    assert "X-Process-Time" in response.headers


def test_request_id_generated_when_missing():
    response = TestClient(_app()).get("/echo")

    assert response.headers["X-Request-ID"]
    assert response.json()["tenant_id"] is None


def test_body_sanitizer_redacts_secrets_and_masks_upi():
    middleware = LoggingMiddleware(FastAPI())

    cleaned = middleware._sanitize(
        {"key_secret": "abc", "vpa": "payer.name@ybl", "nested": [{"upi_utr": "123456789012"}], "amount": 5}
    )

    assert cleaned == {
        "key_secret": "***",
        "vpa": "pa********@ybl",
        "nested": [{"upi_utr": "********9012"}],
        "amount": 5,
    }
