import logging
import re
import threading
import warnings
from dataclasses import dataclass
from enum import Enum
from functools import total_ordering
from typing import FrozenSet, Optional, Tuple

from livy_interpreter.backend.constants import VERSION_PATH, HttpMethod
from livy_interpreter.backend.models import VersionResponse
from livy_interpreter.exc import (
    APINotFoundError,
    RequestError,
    VersionDiscoveryUnavailable,
)

logger = logging.getLogger(__name__)

_VERSION_RE = re.compile(r"^\s*(\d+)(?:\.(\d+))?(?:\.(\d+))?")


@total_ordering
@dataclass(frozen=True)
class LivyVersion:
    """A Livy server version, compared numerically (``0.7.1-incubating`` -> ``(0, 7, 1)``)."""

    major: int
    minor: int = 0
    patch: int = 0
    raw: str = ""

    @classmethod
    def parse(cls, value: str) -> "LivyVersion":
        match = _VERSION_RE.match(value or "")
        if not match:
            raise ValueError(f"Invalid Livy version: {value!r}")
        major, minor, patch = (int(part) if part else 0 for part in match.groups())
        return cls(major, minor, patch, raw=value)

    @classmethod
    def unknown_legacy(cls) -> "LivyVersion":
        """Servers without a version endpoint are 0.2."""
        return cls(0, 2, 0, raw="unknown")

    @property
    def as_tuple(self) -> Tuple[int, int, int]:
        return (self.major, self.minor, self.patch)

    def __eq__(self, other):
        if not isinstance(other, LivyVersion):
            return NotImplemented
        return self.as_tuple == other.as_tuple

    def __lt__(self, other):
        if not isinstance(other, LivyVersion):
            return NotImplemented
        return self.as_tuple < other.as_tuple

    def __hash__(self):
        return hash(self.as_tuple)

    def __str__(self):
        return self.raw or "{}.{}.{}".format(*self.as_tuple)


class Capability(Enum):
    """Server features whose availability depends on the Livy version."""

    CANCEL = "cancel"
    TRACEBACK = "traceback"
    STATEMENT_PROGRESS = "statement_progress"
    SHARED_SESSION = "shared_session"
    STATEMENT_KIND = "statement_kind"
    CODE_COMPLETION = "code_completion"
    SPARKR_PROBE = "sparkr_probe"


# Minimum version for each capability; SPARKR_PROBE only needs a non-legacy server
_MINIMUM_VERSIONS = {
    Capability.CANCEL: LivyVersion(0, 3),
    Capability.TRACEBACK: LivyVersion(0, 3),
    Capability.STATEMENT_PROGRESS: LivyVersion(0, 4),
    Capability.SHARED_SESSION: LivyVersion(0, 5),
    Capability.STATEMENT_KIND: LivyVersion(0, 5),
    Capability.CODE_COMPLETION: LivyVersion(0, 5),
}


@dataclass(frozen=True)
class VersionInfo:
    version: LivyVersion
    capabilities: FrozenSet[Capability]
    legacy: bool = False

    @classmethod
    def for_version(cls, version: LivyVersion, legacy: bool = False) -> "VersionInfo":
        capabilities = {
            capability
            for capability, minimum in _MINIMUM_VERSIONS.items()
            if version >= minimum
        }
        if not legacy:
            capabilities.add(Capability.SPARKR_PROBE)
        return cls(version=version, capabilities=frozenset(capabilities), legacy=legacy)

    @classmethod
    def unknown_legacy(cls) -> "VersionInfo":
        return cls.for_version(LivyVersion.unknown_legacy(), legacy=True)

    def supports(self, capability: Capability) -> bool:
        return capability in self.capabilities


class VersionGate:
    """
    Discovers the server version once and answers capability queries.

    The first call to ``resolve`` or ``supports`` blocks on a single ``GET /version``;
    every later call returns the cached answer. A 404 means the server predates the
    endpoint and is treated as the legacy feature set. Any other failed request is
    answered the same way and is not retried: the gate never asks twice.
    """

    def __init__(self, http_client):
        self._http_client = http_client
        self._lock = threading.RLock()
        self._info: Optional[VersionInfo] = None

    def resolve(self) -> VersionInfo:
        with self._lock:
            if self._info is None:
                self._info = self._discover()
            return self._info

    def supports(self, capability: Capability) -> bool:
        return self.resolve().supports(capability)

    def _discover(self) -> VersionInfo:
        try:
            response = self._http_client.make_request(HttpMethod.GET, VERSION_PATH)
        except APINotFoundError:
            return self._legacy("Livy server has no version endpoint, assuming 0.2")
        except RequestError as e:
            return self._legacy(
                "Could not read the Livy server version ({}), assuming 0.2".format(e)
            )

        version_response = VersionResponse.from_dict(response)
        try:
            version = LivyVersion.parse(version_response.version)
        except ValueError:
            logger.warning(
                "Unparseable Livy version %r, assuming 0.2", version_response.version
            )
            return VersionInfo.unknown_legacy()

        logger.info("Livy server version %s", version)
        return VersionInfo.for_version(version)

    @staticmethod
    def _legacy(message: str) -> VersionInfo:
        logger.warning(message)
        warnings.warn(VersionDiscoveryUnavailable(message), stacklevel=4)
        return VersionInfo.unknown_legacy()
