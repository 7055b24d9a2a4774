import base64
import logging
from typing import Dict

from livy_interpreter.config import InterpreterConfig

logger = logging.getLogger(__name__)


class AuthProvider:
    def add_headers(self, request_headers: Dict[str, str]):
        pass


class BasicAuthProvider(AuthProvider):
    def __init__(self, username: str, password: str):
        credentials = "{}:{}".format(username, password).encode("utf-8")
        self.__authorization_header_value = "Basic {}".format(
            base64.b64encode(credentials).decode("ascii")
        )

    def add_headers(self, request_headers: Dict[str, str]):
        request_headers["Authorization"] = self.__authorization_header_value


def get_auth_provider(config: InterpreterConfig) -> AuthProvider:
    if config.username:
        logger.debug("Using basic authentication for user %s", config.username)
        return BasicAuthProvider(config.username, config.password or "")
    return AuthProvider()
