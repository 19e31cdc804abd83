import hashlib
from datetime import datetime

import pytest
import requests

from conftest import FROZEN_NOW, mock_http_response
from payfast_sdk.main import (
    CancelResult,
    CancelStatus,
    ConfigurationError,
    PayfastClient,
    PayfastSettings,
    SubscriptionRef,
)

EXPECTED_SIGNATURE = hashlib.md5(
    b"merchant-id=M1&timestamp=2024-01-02T03%3A04%3A05&version=v1"
).hexdigest()


def _subscription(**overrides) -> SubscriptionRef:
    values = {"profile_id": "payfast-abc123", "gateway": "payfast", "status": "active"}
    values.update(overrides)
    return SubscriptionRef(**values)


def test_cancel_sends_one_signed_put(client, session):
    result = client.cancel_subscription(_subscription())

    assert result.status == CancelStatus.CANCELLED
    session.request.assert_called_once()
    call_kwargs = session.request.call_args.kwargs
    assert call_kwargs["method"] == "PUT"
    assert call_kwargs["url"] == "https://api.payfast.co.za/subscriptions/payfast-abc123/cancel"
    assert call_kwargs["timeout"] == 60
    assert call_kwargs["verify"] is True
    assert call_kwargs["data"] == b""

    headers = call_kwargs["headers"]
    assert headers["version"] == "v1"
    assert headers["merchant-id"] == "M1"
    assert headers["timestamp"] == "2024-01-02T03:04:05"
    assert headers["signature"] == EXPECTED_SIGNATURE


def test_timestamp_is_taken_once_per_call(settings, session):
    ticks = iter([datetime(2024, 1, 2, 3, 4, 5), datetime(2030, 1, 1, 0, 0, 0)])
    client = PayfastClient(settings, session=session, clock=lambda: next(ticks))

    client.cancel_subscription(_subscription())

    headers = session.request.call_args.kwargs["headers"]
    assert headers["timestamp"] == "2024-01-02T03:04:05"
    assert headers["signature"] == EXPECTED_SIGNATURE


def test_passphrase_changes_signature_not_headers(session):
    client = PayfastClient(
        PayfastSettings(merchant_id="M1", pass_phrase=" secret "),
        session=session,
        clock=lambda: FROZEN_NOW,
    )

    client.cancel_subscription(_subscription())

    headers = session.request.call_args.kwargs["headers"]
    assert "passphrase" not in headers
    assert headers["signature"] == hashlib.md5(
        b"merchant-id=M1&passphrase=secret&timestamp=2024-01-02T03%3A04%3A05&version=v1"
    ).hexdigest()


def test_test_mode_only_changes_url(session):
    live = PayfastClient(PayfastSettings(merchant_id="M1"), session=session, clock=lambda: FROZEN_NOW)
    live.cancel_subscription(_subscription())
    live_kwargs = session.request.call_args.kwargs

    sandbox = PayfastClient(
        PayfastSettings(merchant_id="M1", test_mode=True), session=session, clock=lambda: FROZEN_NOW
    )
    sandbox.cancel_subscription(_subscription())
    sandbox_kwargs = session.request.call_args.kwargs

    assert sandbox_kwargs["url"] == live_kwargs["url"] + "?testing=true"
    assert sandbox_kwargs["headers"] == live_kwargs["headers"]
    assert sandbox_kwargs["verify"] is True


@pytest.mark.parametrize("gateway", ["stripe", "paypal", "PAYFAST", ""])
def test_other_gateways_are_skipped(client, session, gateway):
    result = client.cancel_subscription(_subscription(gateway=gateway))

    assert result.status == CancelStatus.SKIPPED
    assert client.cancel(_subscription(gateway=gateway)) is False
    session.request.assert_not_called()


def test_missing_gateway_is_treated_as_payfast(client, session):
    assert client.cancel(_subscription(gateway=None)) is True
    session.request.assert_called_once()


@pytest.mark.parametrize(
    "exc",
    [
        requests.ConnectionError("connection refused"),
        requests.Timeout("timed out"),
        requests.exceptions.SSLError("bad certificate"),
    ],
)
def test_transport_errors_are_not_retried(client, session, exc):
    session.request.side_effect = exc

    result = client.cancel_subscription(_subscription())

    assert result.status == CancelStatus.TRANSPORT_ERROR
    assert result.detail == str(exc)
    assert not result
    session.request.assert_called_once()


@pytest.mark.parametrize(
    "body",
    [
        {"code": 200, "status": "success"},
        {"code": "400", "status": "failed", "data": {"response": "Subscription not found"}},
        {"status": "success"},
        ["200"],
    ],
)
def test_anything_but_string_200_is_rejected(client, session, body):
    session.request.return_value = mock_http_response(body)

    result = client.cancel_subscription(_subscription())

    assert result.status == CancelStatus.REJECTED
    assert client.cancel(_subscription()) is False


def test_undecodable_body_is_rejected(client, session):
    resp = mock_http_response(None, status_code=502)
    resp.json.side_effect = ValueError("No JSON object could be decoded")
    resp.text = "<html>Bad Gateway</html>"
    session.request.return_value = resp

    result = client.cancel_subscription(_subscription())

    assert result.status == CancelStatus.REJECTED
    assert result.raw == {"raw": "<html>Bad Gateway</html>"}


def test_rejection_keeps_code_and_message():
    result = CancelResult.from_api_payload(
        {"code": 401, "status": "failed", "data": {"response": "Merchant authorization failed."}}
    )

    assert result.code == "401"
    assert result.detail == "Merchant authorization failed."
    assert result.to_dict()["cancelled"] is False


def test_profile_id_is_percent_encoded(client):
    assert client.subscription_url("HQ 46/X") == "https://api.payfast.co.za/subscriptions/HQ%2046%2FX/cancel"


def test_client_requires_merchant_id():
    with pytest.raises(ConfigurationError):
        PayfastClient(PayfastSettings(merchant_id="  "))


def test_settings_from_env(monkeypatch):
    monkeypatch.setenv("PAYFAST_MERCHANT_ID", "10000100")
    monkeypatch.setenv("PAYFAST_PASS_PHRASE", " jt7NOE43FZPn ")
    monkeypatch.setenv("PAYFAST_TEST_MODE", "true")

    settings = PayfastSettings.from_env()

    assert settings.merchant_id == "10000100"
    assert settings.signing_pass_phrase == "jt7NOE43FZPn"
    assert settings.test_mode is True


def test_settings_from_env_requires_merchant_id(monkeypatch):
    monkeypatch.delenv("PAYFAST_MERCHANT_ID", raising=False)

    with pytest.raises(ConfigurationError, match="PAYFAST_MERCHANT_ID"):
        PayfastSettings.from_env()


def test_client_from_env_rejects_bad_timeout(monkeypatch):
    monkeypatch.setenv("PAYFAST_MERCHANT_ID", "10000100")
    monkeypatch.setenv("PAYFAST_TIMEOUT", "soon")

    with pytest.raises(ConfigurationError):
        PayfastClient.from_env()


def test_subscription_ref_from_api_dict():
    ref = SubscriptionRef.from_api_dict({"profileId": "payfast-1", "gateway": " payfast ", "status": ""})

    assert ref == SubscriptionRef(profile_id="payfast-1", gateway="payfast", status=None)
