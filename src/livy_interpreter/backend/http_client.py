import json
import logging
import ssl
import urllib.parse
import urllib.request
from typing import Dict, Any, Optional, List, Tuple, Union

from urllib3 import HTTPConnectionPool, HTTPSConnectionPool, ProxyManager, Timeout
from urllib3.exceptions import HTTPError
from urllib3.util import make_headers

from livy_interpreter import USER_AGENT_NAME, __version__
from livy_interpreter.auth import AuthProvider
from livy_interpreter.backend.constants import REQUESTED_BY_HEADER, HttpMethod
from livy_interpreter.exc import APINotFoundError, InterfaceError, RequestError
from livy_interpreter.types import SSLOptions

logger = logging.getLogger(__name__)

DEFAULT_SOCKET_TIMEOUT = 60.0


def detect_proxy(
    scheme: str, host: Optional[str]
) -> Tuple[Optional[str], Optional[Dict[str, str]]]:
    """
    Detect a system proxy for the given scheme and build basic auth headers for it.

    Returns:
        Tuple of (proxy_uri, proxy_headers) or (None, None) if no proxy applies
    """
    try:
        proxy = urllib.request.getproxies().get(scheme)
    except (KeyError, AttributeError):
        proxy = None
    else:
        if host and urllib.request.proxy_bypass(host):
            proxy = None

    if not proxy:
        return None, None

    parsed_proxy = urllib.parse.urlparse(proxy)
    proxy_headers = None
    if parsed_proxy.username and parsed_proxy.password:
        proxy_headers = make_headers(
            proxy_basic_auth=f"{parsed_proxy.username}:{parsed_proxy.password}"
        )
    return proxy, proxy_headers


class LivyHttpClient:
    """
    HTTP client for the Livy REST API.

    This client uses urllib3 for connection pooling. Requests are never retried
    automatically: a failed submission or poll is reported to the caller as is.
    """

    _pool: Optional[Union[HTTPConnectionPool, HTTPSConnectionPool]]
    proxy_uri: Optional[str]
    proxy_auth: Optional[Dict[str, str]]
    realhost: Optional[str]
    realport: Optional[int]

    def __init__(
        self,
        url: str,
        http_headers: List[Tuple[str, str]],
        auth_provider: AuthProvider,
        ssl_options: SSLOptions,
        **kwargs,
    ):
        """
        Initialize the Livy HTTP client.

        Args:
            url: Base url of the Livy server, e.g. http://livy:8998
            http_headers: List of HTTP headers to include in requests
            auth_provider: Authentication provider
            ssl_options: SSL configuration options
            **kwargs: Additional keyword arguments (max_connections, socket_timeout)
        """

        parsed_url = urllib.parse.urlparse(url.rstrip("/"))
        if parsed_url.scheme not in ("http", "https") or not parsed_url.hostname:
            raise InterfaceError(
                "Livy url must look like http(s)://host:port", {"url": url}
            )

        self.scheme = parsed_url.scheme
        self.host = parsed_url.hostname
        self.port = parsed_url.port or (443 if self.scheme == "https" else 80)
        self.base_path = parsed_url.path.rstrip("/")
        self.base_url = f"{self.scheme}://{self.host}:{self.port}{self.base_path}"

        self.auth_provider = auth_provider
        self.ssl_options = ssl_options

        self.useragent_header = "{}/{}".format(USER_AGENT_NAME, __version__)
        self.headers: Dict[str, str] = dict(http_headers)
        self.headers.update(
            {
                "Content-Type": "application/json",
                "User-Agent": self.useragent_header,
                REQUESTED_BY_HEADER[0]: REQUESTED_BY_HEADER[1],
            }
        )

        self.max_connections = kwargs.get("max_connections", 10)
        self.timeout = Timeout(total=kwargs.get("socket_timeout", DEFAULT_SOCKET_TIMEOUT))

        proxy_uri, proxy_auth = detect_proxy(self.scheme, self.host)
        if proxy_uri:
            self.realhost = self.host
            self.realport = self.port
            self.proxy_uri = proxy_uri
            self.proxy_auth = proxy_auth
        else:
            self.realhost = self.realport = self.proxy_auth = self.proxy_uri = None

        self._pool = None
        self._open()

    def _open(self):
        """Initialize the connection pool."""
        pool_kwargs: Dict[str, Any] = {"maxsize": self.max_connections}

        if self.scheme == "http":
            pool_class = HTTPConnectionPool
        else:
            pool_class = HTTPSConnectionPool
            pool_kwargs.update(
                {
                    "cert_reqs": ssl.CERT_REQUIRED
                    if self.ssl_options.tls_verify
                    else ssl.CERT_NONE,
                    "ca_certs": self.ssl_options.tls_trusted_ca_file,
                    "cert_file": self.ssl_options.tls_client_cert_file,
                    "key_file": self.ssl_options.tls_client_cert_key_file,
                    "key_password": self.ssl_options.tls_client_cert_key_password,
                }
            )

        if self.using_proxy():
            proxy_manager = ProxyManager(
                self.proxy_uri,
                num_pools=1,
                proxy_headers=self.proxy_auth,
            )
            self._pool = proxy_manager.connection_from_host(
                host=self.realhost,
                port=self.realport,
                scheme=self.scheme,
                pool_kwargs=pool_kwargs,
            )
        else:
            self._pool = pool_class(self.host, self.port, **pool_kwargs)

    def close(self):
        """Close the connection pool."""
        if self._pool:
            self._pool.clear()

    def using_proxy(self) -> bool:
        """Check if proxy is being used."""
        return self.realhost is not None

    def _get_auth_headers(self) -> Dict[str, str]:
        """Get authentication headers from the auth provider."""
        headers: Dict[str, str] = {}
        self.auth_provider.add_headers(headers)
        return headers

    def make_request(
        self,
        method: Union[HttpMethod, str],
        path: str,
        data: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """
        Make an HTTP request to the Livy server.

        Args:
            method: HTTP method (GET, POST, DELETE)
            path: API endpoint path, relative to the server url
            data: Request payload data

        Returns:
            Dict[str, Any]: Response data parsed from JSON

        Raises:
            APINotFoundError: If the server answers 404
            RequestError: If the request fails or the server answers with another error status
        """

        method = HttpMethod(method).value
        headers = {**self.headers, **self._get_auth_headers()}

        body = json.dumps(data).encode("utf-8") if data is not None else b""
        if body:
            headers["Content-Length"] = str(len(body))

        logger.debug("Making %s request to %s", method, path)

        if self._pool is None:
            raise RequestError("Connection pool not initialized", None)

        context: Dict[str, Any] = {"method": method, "path": path}
        try:
            with self._pool.request(
                method=method,
                url=self.base_path + path,
                body=body,
                headers=headers,
                preload_content=False,
                retries=False,
                timeout=self.timeout,
            ) as response:
                status = response.status
                payload = response.data.decode("utf-8") if response.data else ""
        except HTTPError as e:
            logger.error("Livy HTTP request %s %s failed: %s", method, path, e)
            context["original-exception"] = e
            raise RequestError(f"Error during request to server. {e}", context) from e

        if 200 <= status < 300:
            if not payload:
                return {}
            try:
                return json.loads(payload)
            except ValueError as e:
                logger.error("Livy answered %s %s with a body that is not JSON", method, path)
                context["http-code"] = status
                context["response-body"] = payload
                raise RequestError(f"Livy returned a response that is not JSON: {e}", context) from e

        context["http-code"] = status
        context["response-body"] = payload
        if status == 404:
            logger.debug("%s %s answered 404", method, path)
            raise APINotFoundError(f"No such resource: {path}", context)

        logger.error("Livy HTTP request %s %s failed with status %s", method, path, status)
        raise RequestError(
            f"Livy HTTP request failed with status {status}: {payload}", context
        )
