# payfast_sdk.py
# SDK Payfast (Subscriptions API: signed cancellation)
# Notes:
# - Timestamp format with seconds "YYYY-MM-DDTHH:MM:SS" (local clock)
# - Signature = md5 of the sorted, form-encoded parameter string
# - passphrase is signed only when non-empty after trim
# - No retries: one PUT per cancellation, caller decides what to do on failure
from __future__ import annotations

from dataclasses import dataclass, field, asdict
from typing import Any, Callable, Dict, List, Mapping, Optional, Union
from datetime import datetime
import hashlib
import json
import logging
import os
import re
from urllib.parse import quote, quote_plus

import requests


__all__ = [
    "PayfastClient",
    "PayfastError",
    "ConfigurationError",
    "ValidationError",
    "RecurringPeriodError",
    "PayfastSettings",
    "SubscriptionRef",
    "CancellationRequest",
    "SignedEnvelope",
    "CancelStatus",
    "CancelResult",
    "build_param_string",
    "generate_signature",
]


# =====================================================================================
# Exceptions
# =====================================================================================

class PayfastError(Exception):
    """Base exception for the Payfast SDK."""


class ConfigurationError(PayfastError):
    """Raised when merchant settings are missing or unusable."""


class ValidationError(PayfastError):
    """Raised when a submitted value is rejected before reaching Payfast."""

    def __init__(self, message: str, status_code: int = 400) -> None:
        super().__init__(message)
        self.status_code = status_code


class RecurringPeriodError(ValidationError):
    """Raised when a donation form selects a billing period Payfast cannot run."""


# =====================================================================================
# Parsing and normalisation helpers
# =====================================================================================

PAYFAST_GATEWAY_ID = "payfast"
API_VERSION = "v1"
TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S"


def _normalize_base_url(base_url: str) -> str:
    return base_url.rstrip("/")


def _coerce_bool(v: Any) -> Optional[bool]:
    """Turns true/false (bool, number, string) into bool. Returns None when not interpretable."""
    if v is None:
        return None
    if isinstance(v, bool):
        return v
    if isinstance(v, (int, float)):
        return bool(v)
    if isinstance(v, str):
        s = v.strip().lower()
        if s in {"true", "t", "1", "yes", "y", "on"}:
            return True
        if s in {"false", "f", "0", "no", "n", "off", ""}:
            return False
    return None


def _maybe_strip(s: Any) -> Optional[str]:
    if s is None:
        return None
    if isinstance(s, str):
        ss = s.strip()
        return ss if ss else None
    return str(s)


def _fmt_timestamp(dt: Union[str, datetime]) -> str:
    """
    Payfast expects 'YYYY-MM-DDTHH:MM:SS' with no offset and no fraction.
    Strings are passed through trimmed, they are assumed to be already valid.
    """
    if isinstance(dt, datetime):
        return dt.replace(microsecond=0).strftime(TIMESTAMP_FORMAT)
    if isinstance(dt, str):
        return dt.strip()
    raise TypeError("timestamp must be str or datetime")


_BACKSLASH_ESCAPE = re.compile(r"\\(.?)", re.S)


def _stripslashes(value: str) -> str:
    """PHP stripslashes: drops escaping backslashes, \\0 becomes NUL."""
    return _BACKSLASH_ESCAPE.sub(lambda m: "\x00" if m.group(1) == "0" else m.group(1), value)


def _encode_path_segment(value: str) -> str:
    return quote((value or "").strip(), safe="")


# =====================================================================================
# Signing
# =====================================================================================

def build_param_string(fields: Mapping[str, Any]) -> str:
    """
    Canonical parameter string used as digest input.

    Keys are sorted ordinally, values are trimmed, unescaped and form-encoded
    ('+' for spaces, '~' as %7E), pairs are joined with '&'. None values are dropped.
    """
    pairs: List[str] = []
    for key in sorted(fields):
        value = fields[key]
        if value is None:
            continue
        encoded = quote_plus(_stripslashes(str(value).strip())).replace("~", "%7E")
        pairs.append(f"{key}={encoded}")
    return "&".join(pairs)


def _digest(param_string: str) -> str:
    # md5 is the algorithm Payfast verifies against, it is not a security choice
    return hashlib.md5(param_string.encode("utf-8")).hexdigest().lower()


def generate_signature(fields: Mapping[str, Any]) -> str:
    return _digest(build_param_string(fields))


# =====================================================================================
# SCHEMAS
# =====================================================================================

@dataclass(frozen=True)
class PayfastSettings:
    """Merchant credentials and environment switch for the Subscriptions API."""
    merchant_id: str
    pass_phrase: Optional[str] = None
    test_mode: bool = False

    @classmethod
    def from_env(cls) -> "PayfastSettings":
        """
        Reads the settings from environment variables.

        Required:
          - PAYFAST_MERCHANT_ID

        Optional:
          - PAYFAST_PASS_PHRASE
          - PAYFAST_TEST_MODE (true/false, default false)
        """
        merchant_id = _maybe_strip(os.getenv("PAYFAST_MERCHANT_ID"))
        missing = [name for name, value in (("PAYFAST_MERCHANT_ID", merchant_id),) if not value]
        if missing:
            raise ConfigurationError(f"Missing required environment variables: {', '.join(missing)}")

        return cls(
            merchant_id=str(merchant_id),
            pass_phrase=os.getenv("PAYFAST_PASS_PHRASE"),
            test_mode=bool(_coerce_bool(os.getenv("PAYFAST_TEST_MODE"))),
        )

    @property
    def signing_pass_phrase(self) -> Optional[str]:
        return _maybe_strip(self.pass_phrase)


@dataclass(frozen=True)
class SubscriptionRef:
    """Host subscription record, reduced to what the gateway needs."""
    profile_id: str
    gateway: Optional[str] = None
    status: Optional[str] = None

    @staticmethod
    def from_api_dict(d: Dict[str, Any]) -> "SubscriptionRef":
        profile_id = d.get("profile_id") or d.get("profileId")
        return SubscriptionRef(
            profile_id=str(profile_id or ""),
            gateway=_maybe_strip(d.get("gateway")),
            status=_maybe_strip(d.get("status")),
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class CancellationRequest:
    """Fields signed for PUT /subscriptions/{token}/cancel."""
    merchant_id: str
    timestamp: str
    passphrase: Optional[str] = None
    version: str = API_VERSION

    def signing_fields(self) -> Dict[str, str]:
        fields = {
            "merchant-id": self.merchant_id.strip(),
            "version": self.version.strip(),
            "timestamp": self.timestamp.strip(),
        }
        passphrase = _maybe_strip(self.passphrase)
        if passphrase:
            fields["passphrase"] = passphrase
        return fields


@dataclass(frozen=True)
class SignedEnvelope:
    param_string: str
    signature: str

    @staticmethod
    def from_fields(fields: Mapping[str, Any]) -> "SignedEnvelope":
        param_string = build_param_string(fields)
        return SignedEnvelope(
            param_string=param_string,
            signature=_digest(param_string),
        )


class CancelStatus:
    """Outcome tags of a cancellation:
    - SKIPPED: subscription belongs to another gateway, nothing sent
    - TRANSPORT_ERROR: connection, timeout or TLS failure
    - REJECTED: Payfast answered with anything but code "200"
    - CANCELLED: Payfast confirmed the cancellation
    """
    SKIPPED: str = "skipped"
    TRANSPORT_ERROR: str = "transport_error"
    REJECTED: str = "rejected"
    CANCELLED: str = "cancelled"


@dataclass(frozen=True)
class CancelResult:
    status: str
    code: Optional[str] = None
    detail: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)

    @property
    def cancelled(self) -> bool:
        return self.status == CancelStatus.CANCELLED

    def __bool__(self) -> bool:
        return self.cancelled

    @staticmethod
    def skipped(detail: Optional[str] = None) -> "CancelResult":
        return CancelResult(status=CancelStatus.SKIPPED, detail=detail)

    @staticmethod
    def transport_error(detail: str) -> "CancelResult":
        return CancelResult(status=CancelStatus.TRANSPORT_ERROR, detail=detail)

    @staticmethod
    def from_api_payload(payload: Any) -> "CancelResult":
        """
        Payfast answers {"code": ..., "status": ..., "data": {...}}.
        Only the literal string "200" in `code` counts as success.
        """
        if not isinstance(payload, dict):
            return CancelResult(
                status=CancelStatus.REJECTED,
                detail="response body is not a JSON object",
                raw={"raw": payload},
            )
        code = payload.get("code")
        if isinstance(code, str) and code == "200":
            return CancelResult(status=CancelStatus.CANCELLED, code=code, raw=payload)
        data = payload.get("data")
        detail = None
        if isinstance(data, dict):
            detail = _maybe_strip(data.get("message") or data.get("response"))
        detail = detail or _maybe_strip(payload.get("status"))
        return CancelResult(
            status=CancelStatus.REJECTED,
            code=None if code is None else str(code),
            detail=detail,
            raw=payload,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status,
            "cancelled": self.cancelled,
            "code": self.code,
            "detail": self.detail,
        }


# =====================================================================================
# HTTP client
# =====================================================================================

class PayfastClient:
    """Payfast Subscriptions API SDK

    Endpoints:
      - PUT /subscriptions/{token}/cancel   (headers: version, merchant-id, signature, timestamp)

    Parameters:
      settings      (PayfastSettings) merchant id, pass-phrase, test mode
      base_url      (str)  default "https://api.payfast.co.za"
      timeout       (sec)  default 60
      user_agent    (str)  optional
      logger        (logging.Logger) optional
      session       (requests.Session) optional
      clock         (callable -> datetime) optional, local time by default
    """

    BASE_URL = "https://api.payfast.co.za"
    SUBSCRIPTIONS_PATH = "/subscriptions"
    CANCEL_SUFFIX = "/cancel"

    def __init__(
        self,
        settings: PayfastSettings,
        *,
        base_url: Optional[str] = None,
        timeout: Union[int, float] = 60,
        user_agent: Optional[str] = None,
        logger: Optional[logging.Logger] = None,
        session: Optional[requests.Session] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        if not settings.merchant_id or not settings.merchant_id.strip():
            raise ConfigurationError("merchant_id is required to sign Payfast requests.")
        self.settings = settings
        self.base_url = _normalize_base_url(base_url or self.BASE_URL)
        self.timeout = float(timeout)
        self.user_agent = user_agent or "payfast-sdk/1.0"
        self.log = logger or logging.getLogger("payfast_sdk")
        if not self.log.handlers:
            handler = logging.StreamHandler()
            handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(message)s"))
            self.log.addHandler(handler)
            self.log.setLevel(logging.INFO)
        self.session = session or requests.Session()
        self._clock = clock or datetime.now

    @classmethod
    def from_env(cls, *, logger: Optional[logging.Logger] = None) -> "PayfastClient":
        """Builds settings from env vars, plus optional PAYFAST_TIMEOUT (seconds)."""
        timeout_env = os.getenv("PAYFAST_TIMEOUT", "60")
        try:
            timeout = float(timeout_env)
        except ValueError as exc:
            raise ConfigurationError(f"PAYFAST_TIMEOUT must be a number, got {timeout_env!r}") from exc
        return cls(PayfastSettings.from_env(), timeout=timeout, logger=logger)

    # -------------------- Signing --------------------
    def build_cancellation_request(self) -> CancellationRequest:
        return CancellationRequest(
            merchant_id=self.settings.merchant_id,
            timestamp=_fmt_timestamp(self._clock()),
            passphrase=self.settings.signing_pass_phrase,
        )

    @staticmethod
    def sign(fields: Mapping[str, Any]) -> SignedEnvelope:
        return SignedEnvelope.from_fields(fields)

    def _headers(self, request: CancellationRequest, envelope: SignedEnvelope) -> Dict[str, str]:
        return {
            "User-Agent": self.user_agent,
            "Accept": "application/json",
            "version": request.version,
            "merchant-id": request.merchant_id.strip(),
            "signature": envelope.signature,
            "timestamp": request.timestamp,
        }

    def subscription_url(self, profile_id: str) -> str:
        url = f"{self.base_url}{self.SUBSCRIPTIONS_PATH}/{_encode_path_segment(profile_id)}{self.CANCEL_SUFFIX}"
        if self.settings.test_mode:
            url += "?testing=true"
        return url

    # -------------------- HTTP low-level --------------------
    @staticmethod
    def _parse_json(resp: requests.Response) -> Any:
        try:
            return resp.json()
        except ValueError:
            return resp.text

    # -------------------- Cancel subscription --------------------
    def cancel_subscription(self, subscription: SubscriptionRef) -> CancelResult:
        """
        PUT /subscriptions/{token}/cancel[?testing=true]
        Headers: version, merchant-id, signature, timestamp
        Body: empty

        Never raises: every failure becomes a CancelResult.
        """
        if subscription.gateway is not None and subscription.gateway != PAYFAST_GATEWAY_ID:
            self.log.debug("skip cancel: gateway=%s", subscription.gateway)
            return CancelResult.skipped(f"subscription handled by gateway '{subscription.gateway}'")

        request = self.build_cancellation_request()
        envelope = self.sign(request.signing_fields())
        url = self.subscription_url(subscription.profile_id)

        try:
            resp = self.session.request(
                method="PUT",
                url=url,
                headers=self._headers(request, envelope),
                data=b"",
                timeout=self.timeout,
                verify=True,
            )
        except requests.RequestException as exc:
            self.log.warning("Payfast cancel %s failed: %s", subscription.profile_id, exc)
            return CancelResult.transport_error(str(exc))

        payload = self._parse_json(resp)
        result = CancelResult.from_api_payload(payload)
        if result.cancelled:
            self.log.info("Payfast subscription %s cancelled", subscription.profile_id)
        else:
            self.log.warning(
                "Payfast rejected cancel %s: HTTP %s payload=%s",
                subscription.profile_id,
                resp.status_code,
                json.dumps(result.raw, default=str)[:800],
            )
        return result

    def cancel(self, subscription: SubscriptionRef) -> bool:
        return self.cancel_subscription(subscription).cancelled
