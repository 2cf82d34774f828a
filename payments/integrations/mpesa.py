"""Daraja (M-Pesa) STK Push client.

``TokenCache`` owns the OAuth bearer token shared by every request in the
process; ``MpesaClient`` signs, sends and classifies the two calls the payment
core needs (initiate and status query).
"""
import logging
import threading
import time
from concurrent.futures import Future
from dataclasses import dataclass, field

import requests
from django.conf import settings
from requests import RequestException

from ..utils import InvalidPaymentInput, gateway_amount, gateway_timestamp, normalize_msisdn, stk_password

logger = logging.getLogger(__name__)

SANDBOX_URL = "https://sandbox.safaricom.co.ke"
PRODUCTION_URL = "https://api.safaricom.co.ke"

TOKEN_PATH = "/oauth/v1/generate?grant_type=client_credentials"
STK_PUSH_PATH = "/mpesa/stkpush/v1/processrequest"
STK_QUERY_PATH = "/mpesa/stkpushquery/v1/query"

SUCCESS_CODE = "0"
# Query answers HTTP 500 with this errorCode while the payer has not acted yet.
# It is the only wait state: 1032 (payer dismissed the prompt) is a final failure.
STILL_PROCESSING_CODE = "500.001.1001"
DEFAULT_TOKEN_TTL = 3599

REQUIRED_SETTINGS = ("CONSUMER_KEY", "CONSUMER_SECRET", "SHORTCODE", "PASSKEY", "CALLBACK_URL")


# ---------- Errors ----------
class MpesaError(Exception):
    """Base for gateway failures.

    ``retryable`` tells callers whether asking the user to try again can help,
    as opposed to a defect an operator has to fix.
    """
    retryable = False

    def __init__(self, message, *, status_code=None, error_code=None):
        super().__init__(message)
        self.status_code = status_code
        self.error_code = error_code


class BadRequest(MpesaError): pass
class AuthFailure(MpesaError): pass
class AuthenticationError(AuthFailure): pass


class RateLimited(MpesaError):
    retryable = True


class GatewayUnavailable(MpesaError):
    retryable = True


class NetworkError(MpesaError):
    retryable = True


def normalize_result_code(value) -> str | None:
    """Daraja sends result codes as ints in callbacks and strings in queries."""
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def base_url_for(environment: str) -> str:
    return PRODUCTION_URL if (environment or "").lower() == "production" else SANDBOX_URL


def missing_settings(config=None) -> list[str]:
    config = config if config is not None else settings.MPESA
    return [f"MPESA_{k}" for k in REQUIRED_SETTINGS if not config.get(k)]


def initiate_deadline(config=None) -> float:
    """Longest an ``initiate`` call can block with the configured retries.

    Counts every POST timing out, the backoff between them, and a 401 refresh
    (one extra token fetch plus one extra POST).
    """
    config = config if config is not None else settings.MPESA
    timeout = float(config.get("TIMEOUT", 30))
    attempts = max(1, int(config.get("MAX_ATTEMPTS", 3)))
    backoff = float(config.get("BACKOFF", 0.5))
    waits = sum(backoff * (2 ** n) for n in range(attempts - 1))
    return timeout * (attempts + 3) + waits


# ---------- Results ----------
@dataclass(frozen=True)
class AccessToken:
    value: str
    expires_at: float  # clock() seconds

    def is_fresh(self, now: float, margin: float) -> bool:
        return now < self.expires_at - margin


@dataclass(frozen=True)
class InitiateResult:
    merchant_request_id: str
    checkout_request_id: str
    response_description: str = ""
    customer_message: str = ""
    raw: dict = field(default_factory=dict, repr=False)


@dataclass(frozen=True)
class StatusResult:
    checkout_request_id: str
    result_code: str | None
    result_desc: str = ""
    raw: dict = field(default_factory=dict, repr=False)

    @property
    def is_pending(self) -> bool:
        return self.result_code in (None, STILL_PROCESSING_CODE)

    @property
    def is_success(self) -> bool:
        return self.result_code == SUCCESS_CODE


# ---------- Token cache ----------
class TokenCache:
    """In-memory bearer token with single-flight refresh.

    When the cache is empty or inside the safety margin, the first caller
    fetches a new token and every concurrent caller waits for that same
    request, sharing its token or its error.
    """

    def __init__(self, *, base_url, consumer_key, consumer_secret, margin=300, timeout=30, clock=time.monotonic):
        self.base_url = base_url.rstrip("/")
        self.consumer_key = consumer_key
        self.consumer_secret = consumer_secret
        self.margin = margin
        self.timeout = timeout
        self.clock = clock
        self._lock = threading.Lock()
        self._token: AccessToken | None = None
        self._inflight: Future | None = None

    def get_token(self) -> AccessToken:
        with self._lock:
            token = self._token
            if token and token.is_fresh(self.clock(), self.margin):
                return token
            leader = self._inflight is None
            if leader:
                self._inflight = Future()
            pending = self._inflight

        if leader:
            try:
                token = self._fetch()
            except BaseException as exc:
                pending.set_exception(exc)
            else:
                with self._lock:
                    self._token = token
                pending.set_result(token)
            finally:
                with self._lock:
                    self._inflight = None
        return pending.result()

    def invalidate(self, token: AccessToken | None = None) -> None:
        """Drop the cached token; with ``token`` given, only if it is still the cached one."""
        with self._lock:
            if token is None or self._token == token:
                self._token = None

    def _fetch(self) -> AccessToken:
        if not (self.consumer_key and self.consumer_secret):
            raise AuthenticationError("Missing M-Pesa consumer key/secret")
        url = f"{self.base_url}{TOKEN_PATH}"
        try:
            resp = requests.get(url, auth=(self.consumer_key, self.consumer_secret), timeout=self.timeout)
        except RequestException as e:
            logger.error("M-Pesa token request failed: %s", e.__class__.__name__)
            raise AuthenticationError("Failed to get M-Pesa access token") from e
        if resp.status_code != 200:
            logger.error("M-Pesa token request rejected: HTTP %s", resp.status_code)
            raise AuthenticationError(
                f"Failed to get M-Pesa access token (HTTP {resp.status_code})", status_code=resp.status_code
            )
        try:
            data = resp.json()
            value = data["access_token"]
            ttl = int(data.get("expires_in") or DEFAULT_TOKEN_TTL)
        except (ValueError, KeyError, TypeError) as e:
            raise AuthenticationError("Malformed M-Pesa token response") from e
        logger.info("Obtained M-Pesa access token (expires in %ss)", ttl)
        return AccessToken(value=value, expires_at=self.clock() + ttl)


_caches: dict[tuple, TokenCache] = {}
_caches_lock = threading.Lock()


def shared_token_cache(config=None) -> TokenCache:
    """Process-wide cache per (environment, consumer key)."""
    config = config if config is not None else settings.MPESA
    base_url = base_url_for(config.get("ENVIRONMENT"))
    key = (base_url, config.get("CONSUMER_KEY"))
    with _caches_lock:
        cache = _caches.get(key)
        if cache is None:
            cache = TokenCache(
                base_url=base_url,
                consumer_key=config.get("CONSUMER_KEY"),
                consumer_secret=config.get("CONSUMER_SECRET"),
                margin=config.get("TOKEN_MARGIN", 300),
                timeout=config.get("TIMEOUT", 30),
            )
            _caches[key] = cache
        return cache


def clear_token_caches() -> None:
    with _caches_lock:
        _caches.clear()


# ---------- Client ----------
def _json(resp) -> dict:
    try:
        data = resp.json()
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}


def _describe(resp) -> tuple[str, str | None]:
    data = _json(resp)
    message = data.get("errorMessage") or data.get("ResponseDescription") or f"HTTP {resp.status_code}"
    return str(message), normalize_result_code(data.get("errorCode"))


def _still_processing(resp) -> bool:
    return _describe(resp)[1] == STILL_PROCESSING_CODE


class MpesaClient:
    def __init__(self, *, base_url, shortcode, passkey, callback_url, token_cache,
                 timeout=30, max_attempts=3, backoff=0.5, sleep=time.sleep):
        self.base_url = base_url.rstrip("/")
        self.shortcode = str(shortcode)
        self.passkey = passkey
        self.callback_url = callback_url
        self.token_cache = token_cache
        self.timeout = timeout
        self.max_attempts = max(1, int(max_attempts))
        self.backoff = backoff
        self.sleep = sleep

    @classmethod
    def from_settings(cls, config=None, **overrides):
        config = config if config is not None else settings.MPESA
        kwargs = dict(
            base_url=base_url_for(config.get("ENVIRONMENT")),
            shortcode=config.get("SHORTCODE", ""),
            passkey=config.get("PASSKEY", ""),
            callback_url=config.get("CALLBACK_URL", ""),
            token_cache=shared_token_cache(config),
            timeout=config.get("TIMEOUT", 30),
            max_attempts=config.get("MAX_ATTEMPTS", 3),
            backoff=config.get("BACKOFF", 0.5),
        )
        kwargs.update(overrides)
        return cls(**kwargs)

    def _credentials(self) -> dict:
        # fresh for every request: the gateway rejects stale timestamps
        timestamp = gateway_timestamp()
        return {
            "BusinessShortCode": self.shortcode,
            "Password": stk_password(self.shortcode, self.passkey, timestamp),
            "Timestamp": timestamp,
        }

    def initiate(self, phone, amount, account_reference, description) -> InitiateResult:
        try:
            msisdn = normalize_msisdn(phone)
            value = gateway_amount(amount)
        except InvalidPaymentInput as e:
            raise BadRequest(str(e)) from e

        def payload():
            return {
                **self._credentials(),
                "TransactionType": "CustomerPayBillOnline",
                "Amount": value,
                "PartyA": msisdn,
                "PartyB": self.shortcode,
                "PhoneNumber": msisdn,
                "CallBackURL": self.callback_url,
                "AccountReference": str(account_reference)[:12],
                "TransactionDesc": (description or "Food Order Payment")[:13],
            }

        resp = self._post(STK_PUSH_PATH, payload)
        data = _json(resp)
        code = normalize_result_code(data.get("ResponseCode"))
        if code != SUCCESS_CODE:
            raise BadRequest(
                data.get("ResponseDescription") or data.get("errorMessage") or "STK push was not accepted",
                status_code=resp.status_code,
                error_code=code,
            )
        merchant_id = data.get("MerchantRequestID")
        checkout_id = data.get("CheckoutRequestID")
        if not (merchant_id and checkout_id):
            raise GatewayUnavailable("STK push acknowledged without correlation ids", status_code=resp.status_code)
        logger.info("STK push accepted merchant=%s checkout=%s amount=%s", merchant_id, checkout_id, value)
        return InitiateResult(
            merchant_request_id=merchant_id,
            checkout_request_id=checkout_id,
            response_description=data.get("ResponseDescription", ""),
            customer_message=data.get("CustomerMessage", ""),
            raw=data,
        )

    def query_status(self, checkout_request_id: str) -> StatusResult:
        def payload():
            return {**self._credentials(), "CheckoutRequestID": checkout_request_id}

        resp = self._post(STK_QUERY_PATH, payload, accept=_still_processing)
        data = _json(resp)
        if resp.status_code >= 500:
            return StatusResult(
                checkout_request_id=checkout_request_id,
                result_code=STILL_PROCESSING_CODE,
                result_desc=data.get("errorMessage", "The transaction is being processed"),
                raw=data,
            )
        return StatusResult(
            checkout_request_id=checkout_request_id,
            result_code=normalize_result_code(data.get("ResultCode")),
            result_desc=str(data.get("ResultDesc") or ""),
            raw=data,
        )

    def _post(self, path, build_payload, accept=None):
        """POST with bearer auth, one token refresh on 401 and bounded retries.

        ``accept`` may claim an otherwise failing 5xx response as a valid answer.
        """
        url = f"{self.base_url}{path}"
        refreshed = False
        attempt = 0
        while True:
            attempt += 1
            token = self.token_cache.get_token()
            headers = {"Authorization": f"Bearer {token.value}", "Content-Type": "application/json"}
            try:
                resp = requests.post(url, json=build_payload(), headers=headers, timeout=self.timeout)
            except (requests.ConnectionError, requests.Timeout) as e:
                if attempt < self.max_attempts:
                    self._wait(attempt, path, e.__class__.__name__)
                    continue
                raise NetworkError(f"Gateway request failed: {e.__class__.__name__}") from e
            except RequestException as e:
                raise NetworkError(f"Gateway request failed: {e.__class__.__name__}") from e

            status = resp.status_code
            if status == 401:
                if refreshed:
                    raise AuthFailure("Gateway rejected a freshly issued token", status_code=status)
                refreshed = True
                attempt -= 1  # the refresh retry is not a transient-failure attempt
                self.token_cache.invalidate(token)
                logger.info("M-Pesa returned 401 for %s; refreshing token", path)
                continue
            if status >= 500:
                if accept and accept(resp):
                    return resp
                if attempt < self.max_attempts:
                    self._wait(attempt, path, f"HTTP {status}")
                    continue
                message, code = _describe(resp)
                raise GatewayUnavailable(message, status_code=status, error_code=code)
            if status == 429:
                message, code = _describe(resp)
                raise RateLimited(message, status_code=status, error_code=code)
            if status == 403:
                message, code = _describe(resp)
                raise AuthFailure(message, status_code=status, error_code=code)
            if status >= 400:
                message, code = _describe(resp)
                raise BadRequest(message, status_code=status, error_code=code)
            return resp

    def _wait(self, attempt, path, reason):
        delay = self.backoff * (2 ** (attempt - 1))
        logger.warning("M-Pesa %s failed (%s); retry %s/%s in %.1fs",
                       path, reason, attempt + 1, self.max_attempts, delay)
        self.sleep(delay)
