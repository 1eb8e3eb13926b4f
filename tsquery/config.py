"""
Engine configuration for tsquery.

Settings are read from the environment so the same engine can be pointed at
different servers without code changes:

- TSQUERY_SERVER_URL: origin of the timeseries server (http or https)
- TSQUERY_USERNAME: principal the event channel subscribes for. When unset,
  the server does not serve events, so reconnection is disabled.
- TSQUERY_TOKEN: optional bearer token for HTTP requests and the event channel
- TSQUERY_EVENTS_PATH / TSQUERY_DATASET_PATH: endpoint paths below the origin
- TSQUERY_RETRY_RESET / TSQUERY_RETRY_DELTA: reconnect backoff, in seconds
- TSQUERY_REQUEST_TIMEOUT: HTTP timeout, in seconds
- TSQUERY_LOG_LEVEL: logging level name
"""

import os
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, Optional
from urllib.parse import urlsplit, urlunsplit

_ENV_PREFIX = "TSQUERY_"

DEFAULT_SERVER_URL = "http://localhost:1324/"


def _env(name: str, default: Optional[str] = None) -> Optional[str]:
    value = os.environ.get(_ENV_PREFIX + name)
    if value is None or value == "":
        return default
    return value


def _env_float(name: str, default: float) -> float:
    value = _env(name)
    if value is None:
        return default
    try:
        return float(value)
    except ValueError:
        raise ValueError(f"{_ENV_PREFIX}{name} must be a number, got {value!r}")


@dataclass
class EngineConfig:
    """Connection and backoff settings shared by the engine components."""

    server_url: str = DEFAULT_SERVER_URL
    username: Optional[str] = None
    token: Optional[str] = None
    events_path: str = "api/events"
    dataset_path: str = "api/timeseries/dataset"
    reset_timeout: float = 0.2
    retry_timeout_delta: float = 1.0
    request_timeout: float = 30.0
    log_level: str = "INFO"
    reconnect: Optional[bool] = None
    extra_headers: Dict[str, str] = field(default_factory=dict)

    def __post_init__(self):
        if not self.server_url.endswith("/"):
            self.server_url += "/"
        if self.reconnect is None:
            self.reconnect = self.username is not None

    @property
    def events_url(self) -> str:
        """WebSocket URL of the event channel, derived from the server origin."""
        parts = urlsplit(self.server_url)
        scheme = "ws" if parts.scheme == "http" else "wss"
        return urlunsplit((scheme, parts.netloc, parts.path + self.events_path.lstrip("/"), "", ""))

    @property
    def headers(self) -> Dict[str, str]:
        headers = dict(self.extra_headers)
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        if data.get("token"):
            data["token"] = "***"
        return data

    @classmethod
    def from_env(cls) -> "EngineConfig":
        """Build a config from TSQUERY_* environment variables."""
        return cls(
            server_url=_env("SERVER_URL", DEFAULT_SERVER_URL),
            username=_env("USERNAME"),
            token=_env("TOKEN"),
            events_path=_env("EVENTS_PATH", "api/events"),
            dataset_path=_env("DATASET_PATH", "api/timeseries/dataset"),
            reset_timeout=_env_float("RETRY_RESET", 0.2),
            retry_timeout_delta=_env_float("RETRY_DELTA", 1.0),
            request_timeout=_env_float("REQUEST_TIMEOUT", 30.0),
            log_level=_env("LOG_LEVEL", "INFO"),
        )
