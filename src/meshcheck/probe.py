"""
Single-shot HTTP probes.

ProbeClient wraps one requests.Session with a default deadline and no retry
adapter. It never raises for HTTP or transport problems: the outcome of every
call, including connection errors and undecodable bodies, is recorded on the
returned ProbeResult so the scenario layer can apply criticality policy.
"""

import json
import logging
import time
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional

import requests
from requests.adapters import HTTPAdapter

logger = logging.getLogger(__name__)

JSON_HEADERS = {"Content-Type": "application/json", "Accept": "application/json"}


@dataclass(frozen=True)
class ProbeRequest:
    """An immutable HTTP request description."""

    method: str
    url: str
    headers: Mapping[str, str] = field(default_factory=dict)
    body: Any = None

    def __post_init__(self):
        object.__setattr__(self, "method", self.method.upper())
        object.__setattr__(self, "headers", MappingProxyType(dict(self.headers)))

    def encoded_body(self) -> Optional[bytes]:
        """JSON-encode dict/list bodies; pass str and bytes through."""
        if self.body is None:
            return None
        if isinstance(self.body, bytes):
            return self.body
        if isinstance(self.body, str):
            return self.body.encode("utf-8")
        return json.dumps(self.body).encode("utf-8")


_NO_JSON = object()


@dataclass
class ProbeResult:
    """Everything observed for one probe."""

    request: ProbeRequest
    status_code: Optional[int] = None
    headers: Dict[str, str] = field(default_factory=dict)
    body: bytes = b""
    json: Any = None
    json_error: Optional[str] = None
    error: Optional[str] = None
    latency_ms: float = 0.0

    @property
    def reachable(self) -> bool:
        return self.error is None and self.status_code is not None

    @property
    def is_success(self) -> bool:
        """True for 2xx and 3xx responses."""
        return self.reachable and 200 <= self.status_code < 400

    @property
    def has_json(self) -> bool:
        return self.json_error is None and bool(self.body)

    @property
    def text(self) -> str:
        return self.body.decode("utf-8", errors="replace")

    def header(self, name: str) -> Optional[str]:
        """Case-insensitive header lookup."""
        wanted = name.lower()
        for key, value in self.headers.items():
            if key.lower() == wanted:
                return value
        return None

    def missing_fields(self, names) -> List[str]:
        """Top level JSON fields absent from the body."""
        if not isinstance(self.json, dict):
            return list(names)
        return [name for name in names if name not in self.json]

    def json_array(self, field_name: str = "data") -> Optional[list]:
        if isinstance(self.json, dict) and isinstance(self.json.get(field_name), list):
            return self.json[field_name]
        return None

    def excerpt(self, limit: int = 500) -> str:
        text = self.text
        return text if len(text) <= limit else text[:limit] + "..."

    def describe(self) -> str:
        target = f"{self.request.method} {self.request.url}"
        if self.error:
            return f"{target} -> error: {self.error}"
        return f"{target} -> {self.status_code} in {self.latency_ms:.0f}ms"


class ProbeClient:
    """
    HTTP client shared by every probe in a run.

    Args:
        timeout: Default deadline in seconds for each probe
        default_headers: Headers sent with every request
        session: Pre-built session (tests inject their own)
    """

    def __init__(
        self,
        timeout: float = 5.0,
        default_headers: Optional[Mapping[str, str]] = None,
        session: Optional[requests.Session] = None,
    ):
        self.timeout = timeout
        self.default_headers = dict(default_headers or {})
        self.session = session or self._build_session()

    @staticmethod
    def _build_session() -> requests.Session:
        session = requests.Session()
        # Single-shot: no transparent retries
        adapter = HTTPAdapter(max_retries=0)
        session.mount("http://", adapter)
        session.mount("https://", adapter)
        session.trust_env = False
        return session

    def send(self, request: ProbeRequest, timeout: Optional[float] = None) -> ProbeResult:
        """Issue one request and record what happened."""
        headers = {**self.default_headers, **request.headers}
        data = request.encoded_body()
        if data is not None and not any(k.lower() == "content-type" for k in headers):
            headers["Content-Type"] = "application/json"

        result = ProbeResult(request=request)
        start = time.monotonic()
        try:
            with self.session.request(
                request.method,
                request.url,
                headers=headers,
                data=data,
                timeout=timeout or self.timeout,
                allow_redirects=False,
            ) as response:
                result.status_code = response.status_code
                result.headers = dict(response.headers)
                result.body = response.content
        except requests.RequestException as e:
            result.error = f"{type(e).__name__}: {e}"
        result.latency_ms = (time.monotonic() - start) * 1000

        if result.reachable:
            _decode_json(result)

        logger.debug(result.describe())
        return result

    def request(self, method: str, url: str, body: Any = None, headers: Optional[Mapping[str, str]] = None,
                timeout: Optional[float] = None) -> ProbeResult:
        return self.send(ProbeRequest(method, url, headers or {}, body), timeout=timeout)

    def get(self, url: str, **kwargs) -> ProbeResult:
        return self.request("GET", url, **kwargs)

    def post(self, url: str, body: Any = None, **kwargs) -> ProbeResult:
        return self.request("POST", url, body=body, **kwargs)

    def put(self, url: str, body: Any = None, **kwargs) -> ProbeResult:
        return self.request("PUT", url, body=body, **kwargs)

    def delete(self, url: str, **kwargs) -> ProbeResult:
        return self.request("DELETE", url, **kwargs)

    def close(self) -> None:
        self.session.close()

    def __enter__(self) -> "ProbeClient":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


def _decode_json(result: ProbeResult) -> None:
    if not result.body:
        result.json_error = "empty body"
        return
    try:
        result.json = json.loads(result.body)
    except (ValueError, UnicodeDecodeError) as e:
        result.json_error = str(e)
