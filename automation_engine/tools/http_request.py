"""HTTP request capability built on ``requests``."""

import json
from typing import Any, Dict, Optional

import requests

from ..core.capabilities import CapabilityInvoker
from ..core.error_recovery import RetryConfig, retry_call
from ..core.exceptions import CapabilityError, TransientError
from ..core.logging import get_logger

logger = get_logger(__name__)

ALLOWED_METHODS = {"GET", "POST", "PUT", "PATCH", "DELETE", "HEAD"}


class HttpRequestCapability(CapabilityInvoker):
    """Perform the request described by an ``http`` node.

    Config keys: ``method``, ``url``, ``headers``, ``params``, ``body``,
    ``timeout``, ``retries`` and ``retry_delay``. Server errors and
    connection failures are retried ``retries`` times; client errors fail
    at once. The result is ``{"status", "headers", "body"}`` where ``body``
    is decoded JSON when the response is JSON.
    """

    description = "Call an external HTTP endpoint"

    def __init__(self, session: Optional[requests.Session] = None, default_timeout: float = 30.0):
        self._session = session or requests.Session()
        self._default_timeout = default_timeout

    def invoke(self, config: Dict[str, Any], context: Dict[str, Any]) -> Dict[str, Any]:
        method = str(config.get("method") or "GET").upper()
        url = str(config.get("url") or "").strip()
        if method not in ALLOWED_METHODS:
            raise CapabilityError(f"Unsupported HTTP method '{method}'", capability="http")
        if not url.startswith(("http://", "https://")):
            raise CapabilityError(f"Invalid URL '{url}'", capability="http")

        retries = int(config.get("retries") or 0)
        retry_config = RetryConfig(
            max_attempts=retries + 1,
            base_delay=float(config.get("retry_delay", 1.0) or 0),
            max_delay=30.0,
            jitter=False,
        )
        return retry_call(self._send, retry_config, method, url, config)

    def _send(self, method: str, url: str, config: Dict[str, Any]) -> Dict[str, Any]:
        kwargs: Dict[str, Any] = {
            "headers": dict(config.get("headers") or {}),
            "params": dict(config.get("params") or {}),
            "timeout": float(config.get("timeout") or self._default_timeout),
        }
        body = config.get("body")
        if body not in (None, "") and method not in ("GET", "HEAD"):
            if isinstance(body, (dict, list)):
                kwargs["json"] = body
            else:
                kwargs["data"] = str(body).encode("utf-8")

        logger.debug(f"HTTP {method} {url}")
        try:
            response = self._session.request(method, url, **kwargs)
        except (requests.ConnectionError, requests.Timeout) as e:
            raise TransientError(f"HTTP {method} {url} failed: {e}", context={"url": url})
        except requests.RequestException as e:
            raise CapabilityError(f"HTTP {method} {url} failed: {e}", capability="http")

        if response.status_code >= 500:
            raise TransientError(
                f"HTTP {method} {url} returned {response.status_code}",
                details={"status": response.status_code},
            )
        if response.status_code >= 400:
            raise CapabilityError(
                f"HTTP {method} {url} returned {response.status_code}",
                capability="http",
                details={"status": response.status_code, "body": response.text[:500]},
            )

        return {
            "status": response.status_code,
            "headers": dict(response.headers),
            "body": _decode_body(response),
        }


def _decode_body(response: requests.Response) -> Any:
    content_type = response.headers.get("Content-Type", "")
    if "json" in content_type:
        try:
            return response.json()
        except (ValueError, json.JSONDecodeError):
            return response.text
    return response.text
