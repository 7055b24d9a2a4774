"""
Configuration for the Livy interpreter client.

Settings can be given directly as keyword arguments to ``InterpreterConfig`` or read
from a flat property map using the Zeppelin property names, e.g.::

    config = InterpreterConfig.from_properties(
        {
            "zeppelin.livy.url": "http://livy:8998",
            "zeppelin.livy.session.create_timeout": "120",
            "livy.spark.executor.cores": "4",
        }
    )
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Tuple

from livy_interpreter.exc import InterfaceError
from livy_interpreter.types import SSLOptions

logger = logging.getLogger(__name__)

PROPERTY_PREFIX = "zeppelin.livy."
SESSION_CONF_PREFIX = "livy.spark."

DEFAULT_SESSION_CREATE_TIMEOUT = 120
DEFAULT_PULL_STATUS_INTERVAL_MILLIS = 1000
DEFAULT_MAX_RESULT_ROWS = 1000
DEFAULT_MAX_FIELD_LENGTH = 20


def _to_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ("true", "1", "yes", "on")


def _to_optional_float(value: Any) -> Optional[float]:
    if value is None or str(value).strip() == "":
        return None
    number = float(value)
    return number if number > 0 else None


def parse_http_headers(value: Optional[str]) -> List[Tuple[str, str]]:
    """
    Parse the ``key:value;key2:value2`` header list format.

    Raises:
        InterfaceError: If an entry has no ``:`` separator
    """

    if not value:
        return []

    headers = []
    for entry in value.split(";"):
        entry = entry.strip()
        if not entry:
            continue
        name, sep, header_value = entry.partition(":")
        if not sep:
            raise InterfaceError(
                "Invalid http header entry, expected key:value",
                {"entry": entry},
            )
        headers.append((name.strip(), header_value.strip()))
    return headers


@dataclass
class InterpreterConfig:
    url: str
    session_create_timeout: float = DEFAULT_SESSION_CREATE_TIMEOUT
    pull_status_interval: float = DEFAULT_PULL_STATUS_INTERVAL_MILLIS / 1000.0
    statement_timeout: Optional[float] = None
    max_result_rows: int = DEFAULT_MAX_RESULT_ROWS
    max_field_length: int = DEFAULT_MAX_FIELD_LENGTH
    enable_field_truncation: bool = True
    shared_session_key: Optional[str] = None
    sql_doubled_quote_escape: bool = True
    display_app_info: bool = False
    restart_dead_session: bool = False
    proxy_user: Optional[str] = None
    session_name: Optional[str] = None
    session_heartbeat_timeout: Optional[int] = None
    session_conf: Dict[str, str] = field(default_factory=dict)
    http_headers: List[Tuple[str, str]] = field(default_factory=list)
    username: Optional[str] = None
    password: Optional[str] = None
    ssl_options: SSLOptions = field(default_factory=SSLOptions)

    def __post_init__(self):
        if not self.url:
            raise InterfaceError("A Livy url is required, e.g. http://localhost:8998")
        if self.session_create_timeout <= 0:
            raise InterfaceError(
                "session_create_timeout must be positive",
                {"session_create_timeout": self.session_create_timeout},
            )
        if self.pull_status_interval <= 0:
            raise InterfaceError(
                "pull_status_interval must be positive",
                {"pull_status_interval": self.pull_status_interval},
            )
        if self.max_field_length < 4:
            raise InterfaceError(
                "max_field_length must leave room for the ellipsis",
                {"max_field_length": self.max_field_length},
            )

    @classmethod
    def from_properties(cls, properties: Mapping[str, Any]) -> "InterpreterConfig":
        """Build a config from Zeppelin-style interpreter properties."""

        def prop(name: str, default: Any = None) -> Any:
            value = properties.get(PROPERTY_PREFIX + name)
            return default if value is None else value

        session_conf = {}
        for key, value in properties.items():
            # livy.spark.executor.cores -> spark.executor.cores
            if key.startswith(SESSION_CONF_PREFIX) and str(value) != "":
                session_conf[key[len("livy.") :]] = str(value)

        ssl_options = SSLOptions(
            tls_verify=not _to_bool(prop("ssl.no_verify", False)),
            tls_trusted_ca_file=prop("ssl.trustStore"),
            tls_client_cert_file=prop("ssl.keyStore"),
            tls_client_cert_key_file=prop("ssl.keyFile"),
            tls_client_cert_key_password=prop("ssl.keyPassword"),
        )

        return cls(
            url=prop("url", ""),
            session_create_timeout=float(
                prop("session.create_timeout", DEFAULT_SESSION_CREATE_TIMEOUT)
            ),
            pull_status_interval=float(
                prop("pull_status.interval.millis", DEFAULT_PULL_STATUS_INTERVAL_MILLIS)
            )
            / 1000.0,
            statement_timeout=_to_optional_float(prop("statement.timeout")),
            max_result_rows=int(prop("spark.sql.maxResult", DEFAULT_MAX_RESULT_ROWS)),
            max_field_length=int(
                prop("spark.sql.field.maxLength", DEFAULT_MAX_FIELD_LENGTH)
            ),
            enable_field_truncation=_to_bool(prop("spark.sql.field.truncate", True)),
            shared_session_key=prop("shared_session_key") or None,
            sql_doubled_quote_escape=_to_bool(prop("sql.doubled_quote_escape", True)),
            display_app_info=_to_bool(prop("displayAppInfo", False)),
            restart_dead_session=_to_bool(prop("restart_dead_session", False)),
            proxy_user=prop("proxy_user") or None,
            session_name=properties.get("livy.name") or None,
            session_heartbeat_timeout=int(prop("session.heartbeat_timeout", 0)) or None,
            session_conf=session_conf,
            http_headers=parse_http_headers(prop("http.headers")),
            username=prop("username") or None,
            password=prop("password") or None,
            ssl_options=ssl_options,
        )
