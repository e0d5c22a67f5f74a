"""
rpc.py — single JSON-RPC requests against one endpoint, with failure classification.

Every failure leaves this module as an EndpointRejected carrying one of:

    rate_limited        HTTP 429, or rate-limit vocabulary in the error text
    server_error        HTTP >= 500, or an unparseable body
    network_or_timeout  connection refused/reset, read timeout
    range_rejected      block-span or result-count limit exceeded
    client_error        anything else (malformed request, bad params); never retried
"""
from __future__ import annotations

import logging

import requests

logger = logging.getLogger(__name__)

RATE_LIMITED = "rate_limited"
SERVER_ERROR = "server_error"
NETWORK_OR_TIMEOUT = "network_or_timeout"
RANGE_REJECTED = "range_rejected"
CLIENT_ERROR = "client_error"

RETRYABLE_KINDS = frozenset({RATE_LIMITED, SERVER_ERROR, NETWORK_OR_TIMEOUT})

RATE_LIMIT_PATTERNS = (
    "rate limit",
    "rate-limit",
    "ratelimit",
    "too many requests",
    "over rate limit",
    "exceeded the quota",
    "request limit reached",
    "capacity exceeded",
)

RANGE_PATTERNS = (
    "block range",
    "range too large",
    "range is too large",
    "range too wide",
    "exceed maximum block range",
    "exceeds maximum block range",
    "query returned more than",
    "more than 10000 results",
    "too many results",
    "response size exceeded",
    "log response size",
    "max results",
    "eth_getlogs is limited",
)

# Infura/geth style "query returned more than N results"
LIMIT_EXCEEDED_CODE = -32005


class RpcError(RuntimeError):
    def __init__(self, code: int, message: str, data: dict | None = None):
        super().__init__(f"RPC error {code}: {message}")
        self.code = code
        self.message = message
        self.data = data if isinstance(data, dict) else {}


class HttpError(RuntimeError):
    """Raised when an HTTP error occurs (e.g., 401 Unauthorized, 429 Rate Limit)"""
    def __init__(self, status_code: int, message: str, url: str):
        super().__init__(f"HTTP {status_code} error for {url}: {message}")
        self.status_code = status_code
        self.message = message
        self.url = url


class EndpointRejected(RuntimeError):
    def __init__(self, kind: str, endpoint: str, message: str, cause: Exception | None = None):
        super().__init__(f"[{kind}] {endpoint}: {message}")
        self.kind = kind
        self.endpoint = endpoint
        self.message = message
        self.cause = cause

    @property
    def retryable(self) -> bool:
        return self.kind in RETRYABLE_KINDS


def _matches(text: str, patterns: tuple[str, ...]) -> bool:
    t = (text or "").lower()
    return any(p in t for p in patterns)


def classify_error(exc: Exception) -> str:
    """Map a raw transport/RPC failure to one of the classification kinds."""
    if isinstance(exc, (requests.exceptions.ConnectionError, requests.exceptions.Timeout)):
        return NETWORK_OR_TIMEOUT

    if isinstance(exc, HttpError):
        if exc.status_code == 429 or _matches(exc.message, RATE_LIMIT_PATTERNS):
            return RATE_LIMITED
        if _matches(exc.message, RANGE_PATTERNS):
            return RANGE_REJECTED
        if exc.status_code >= 500:
            return SERVER_ERROR
        return CLIENT_ERROR

    if isinstance(exc, RpcError):
        text = f"{exc.message} {exc.data}"
        if _matches(text, RANGE_PATTERNS):
            return RANGE_REJECTED
        if _matches(text, RATE_LIMIT_PATTERNS) or exc.code == 429:
            return RATE_LIMITED
        if exc.code == LIMIT_EXCEEDED_CODE:
            return RANGE_REJECTED
        return CLIENT_ERROR

    if isinstance(exc, ValueError):
        # body was not JSON; usually a gateway page in front of the node
        return SERVER_ERROR

    if isinstance(exc, requests.RequestException):
        return NETWORK_OR_TIMEOUT

    return CLIENT_ERROR


def rpc_call(endpoint: str, method: str, params: list, timeout: float = 10.0):
    """
    Issue one JSON-RPC request. Returns the parsed `result` or raises EndpointRejected.
    """
    try:
        resp = requests.post(
            endpoint,
            json={"jsonrpc": "2.0", "id": 1, "method": method, "params": params},
            headers={"content-type": "application/json"},
            timeout=timeout,
        )
        if resp.status_code >= 400:
            raise HttpError(resp.status_code, resp.text[:240], endpoint)

        j = resp.json()
        if not isinstance(j, dict):
            raise ValueError(f"unexpected JSON-RPC payload: {str(j)[:240]}")
        if j.get("error"):
            err = j["error"]
            if not isinstance(err, dict):
                err = {"message": str(err)}
            raise RpcError(int(err.get("code", -1)), str(err.get("message", "")), err.get("data"))
        return j.get("result")
    except (RpcError, HttpError, ValueError, requests.RequestException) as e:
        kind = classify_error(e)
        logger.debug("%s %s failed on %s: %s", method, kind, endpoint, e)
        raise EndpointRejected(kind, endpoint, str(e), cause=e) from e


def hex_block(n: int) -> str:
    return hex(n)


def parse_quantity(value) -> int:
    if isinstance(value, int):
        return value
    return int(value, 16)
