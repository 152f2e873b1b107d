import json
import logging

import pytest
from fastapi import FastAPI, Request
from fastapi.testclient import TestClient

from logtopost.core.config import Settings, build_entitlement_config, validate_config
from logtopost.core.errors import LimitReachedError, register_error_handlers
from logtopost.core.logging import JsonFormatter, latency_bucket_ms, log_event, mask_secrets, truncate_field
from logtopost.core.middleware.request_id import RequestIdMiddleware


def test_entitlement_config_from_settings():
    cfg = build_entitlement_config(Settings(
        TRIAL_GENERATION_LIMIT=5,
        PREMIUM_GENERATION_LIMIT=50,
        TRIAL_DAYS=14,
        FRONTEND_URL="https://app.example.com/",
    ))
    assert cfg.quota("trial") == 5
    assert cfg.quota("premium") == 50
    assert cfg.quota("none") == 0
    assert cfg.quota("unknown") == 0
    assert cfg.trial_days == 14
    assert cfg.portal_return_url == "https://app.example.com/dashboard"
    assert "{CHECKOUT_SESSION_ID}" in cfg.checkout_success_url


def test_validate_config_strict_raises_on_missing_keys():
    with pytest.raises(RuntimeError) as exc:
        validate_config(strict=True, settings_obj=Settings(DATABASE_URL=None, STRIPE_SECRET_KEY=None))
    assert "STRIPE_SECRET_KEY" in str(exc.value)


def test_validate_config_non_strict_warns(caplog):
    with caplog.at_level(logging.WARNING):
        assert validate_config(strict=False, settings_obj=Settings(STRIPE_SECRET_KEY=None)) is True
    assert "Missing required configuration" in caplog.text


def test_production_rejects_default_jwt_secret():
    cfg = Settings(
        ENV="production",
        DATABASE_URL="postgresql://db/app",
        STRIPE_SECRET_KEY="sk_live_x",
        STRIPE_WEBHOOK_SECRET="whsec_x",
    )
    with pytest.raises(RuntimeError) as exc:
        validate_config(strict=True, settings_obj=cfg)
    assert "JWT_SECRET" in str(exc.value)


def test_json_formatter_carries_structured_fields():
    record = logging.LogRecord("logtopost", logging.INFO, __file__, 1, "hello", None, None)
    record.request_id = "rid-1"
    record.event_id = "evt_1"
    record.error_code = "limit_reached"
    payload = json.loads(JsonFormatter().format(record))
    assert payload["message"] == "hello"
    assert payload["request_id"] == "rid-1"
    assert payload["event_id"] == "evt_1"
    assert payload["error_code"] == "limit_reached"


def test_log_event_truncates_extra(caplog):
    with caplog.at_level(logging.INFO, logger="logtopost"):
        log_event("info", "webhook.test", event_id="evt_9", extra={"detail": "x" * 2000})
    record = caplog.records[-1]
    assert record.event_id == "evt_9"
    assert record.detail.endswith("...<truncated>")
    assert truncate_field("short") == "short"


def test_stripe_secrets_are_masked():
    assert mask_secrets("key sk_live_abc123XYZ used") == "key sk_live_*** used"
    assert mask_secrets("secret whsec_9f8e7d") == "secret whsec_***"
    assert mask_secrets("customer cus_123") == "customer cus_123"

    record = logging.LogRecord("logtopost", logging.ERROR, __file__, 1, "bad key sk_test_zzz999", None, None)
    assert "sk_test_zzz999" not in JsonFormatter().format(record)


def test_latency_buckets():
    assert latency_bucket_ms(None) == "unknown"
    assert latency_bucket_ms(5) == "<10ms"
    assert latency_bucket_ms(2500) == ">=1000ms"


def _app():
    app = FastAPI()
    app.add_middleware(RequestIdMiddleware)
    register_error_handlers(app)

    @app.get("/rid")
    async def rid(request: Request):
        return {"request_id": request.state.request_id}

    @app.get("/limit")
    async def limit():
        raise LimitReachedError("used up", details={"limit": 10})

    return app


def test_request_id_generated_and_echoed():
    client = TestClient(_app())
    resp = client.get("/rid")
    assert resp.headers["x-request-id"] == resp.json()["request_id"]
    assert client.get("/rid", headers={"X-Request-Id": "abc"}).headers["x-request-id"] == "abc"


def test_app_error_contract():
    resp = TestClient(_app()).get("/limit", headers={"X-Request-Id": "rid-7"})
    assert resp.status_code == 403
    body = resp.json()
    assert body["error"] == {
        "code": "limit_reached",
        "message": "used up",
        "request_id": "rid-7",
        "details": {"limit": 10},
    }
    assert body["detail"] == "used up"


def test_unsafe_request_id_is_replaced():
    resp = TestClient(_app()).get("/rid", headers={"X-Request-Id": "bad id with spaces"})
    rid = resp.headers["x-request-id"]
    assert rid != "bad id with spaces"
    assert rid == resp.json()["request_id"]
