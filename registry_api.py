"""Registry tag listing over HTTP.

Talks to the Docker Hub repository API and to GHCR-style ``/v2`` registries
with a shared ``requests.Session``.  Only one page of tags is fetched per
call and nothing is retried; callers decide what to do with a failure.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional

import requests

logger = logging.getLogger(__name__)

DEFAULT_DOCKERHUB_URL = "https://hub.docker.com"
DEFAULT_GHCR_URL = "https://ghcr.io"
DEFAULT_DOCKERHUB_PAGE_SIZE = 100
DEFAULT_GHCR_PAGE_SIZE = 10
REQUEST_TIMEOUT = 30


class RegistryError(Exception):
    """Tags could not be fetched from a registry."""


class RegistryUnsupported(RegistryError):
    def __init__(self, kind: str):
        self.kind = kind
        super().__init__(f"Unsupported image source '{kind}'")


class AuthRequired(RegistryError):
    def __init__(self, kind: str):
        self.kind = kind
        super().__init__(f"A token is required for {kind} registries")


class RateLimited(RegistryError):
    def __init__(self, retry_after: Optional[int] = None):
        self.retry_after = retry_after
        detail = f", retry after {retry_after}s" if retry_after is not None else ""
        super().__init__(f"Rate limited by registry{detail}")


class TransportError(RegistryError):
    def __init__(self, message: str, status: Optional[int] = None):
        self.status = status
        self.message = message
        prefix = f"HTTP {status}: " if status is not None else ""
        super().__init__(f"{prefix}{message}")


class MalformedResponse(RegistryError):
    """Registry answered with something other than the expected JSON shape."""


class RegistryKind(str, Enum):
    DOCKERHUB = "dockerhub"
    GHCR = "ghcr"

    @classmethod
    def parse(cls, value: str) -> "RegistryKind":
        try:
            return cls(str(value).lower())
        except ValueError:
            raise RegistryUnsupported(value) from None


@dataclass(frozen=True)
class RegistryRef:
    """Where to look for tags.  ``kind`` is a RegistryKind value."""
    namespace: str
    repository: str
    kind: str

    def __str__(self) -> str:
        return f"{self.namespace}/{self.repository}"


@dataclass(frozen=True)
class RegistryCredentials:
    ghcr_token: Optional[str] = None
    dockerhub_token: Optional[str] = None


def _retry_after(response: requests.Response) -> Optional[int]:
    value = response.headers.get('Retry-After')
    if value is None:
        return None
    try:
        return max(0, int(value.strip()))
    except ValueError:
        return None


class RegistryClient:
    """Fetches raw tag lists from supported registries."""

    def __init__(self, session: Optional[requests.Session] = None,
                 dockerhub_url: str = DEFAULT_DOCKERHUB_URL,
                 ghcr_url: str = DEFAULT_GHCR_URL,
                 dockerhub_page_size: int = DEFAULT_DOCKERHUB_PAGE_SIZE,
                 ghcr_page_size: int = DEFAULT_GHCR_PAGE_SIZE,
                 timeout: float = REQUEST_TIMEOUT):
        self.session = session or requests.Session()
        self.dockerhub_url = dockerhub_url.rstrip('/')
        self.ghcr_url = ghcr_url.rstrip('/')
        self.dockerhub_page_size = dockerhub_page_size
        self.ghcr_page_size = ghcr_page_size
        self.timeout = timeout

    def _get_json(self, url: str, params: Dict[str, Any],
                  headers: Dict[str, str]) -> Any:
        """GET *url* and decode the JSON body, mapping failures to RegistryError."""
        try:
            response = self.session.get(url, params=params, headers=headers, timeout=self.timeout)
        except requests.RequestException as e:
            raise TransportError(str(e)) from e

        if response.status_code == 429:
            raise RateLimited(_retry_after(response))
        if not 200 <= response.status_code < 300:
            raise TransportError(response.reason or "request failed", status=response.status_code)

        try:
            return response.json()
        except ValueError as e:
            raise MalformedResponse(f"Invalid JSON from {url}: {e}") from e

    def _dockerhub_tags(self, ref: RegistryRef, credentials: RegistryCredentials) -> List[str]:
        url = f"{self.dockerhub_url}/v2/repositories/{ref.namespace}/{ref.repository}/tags"
        headers = {}
        if credentials.dockerhub_token:
            headers['Authorization'] = f'Bearer {credentials.dockerhub_token}'

        data = self._get_json(url, {'page_size': self.dockerhub_page_size}, headers)
        results = data.get('results') if isinstance(data, dict) else None
        if not isinstance(results, list):
            raise MalformedResponse(f"Missing 'results' list in Docker Hub response for {ref}")

        tags = []
        for result in results:
            name = result.get('name') if isinstance(result, dict) else None
            if not isinstance(name, str):
                raise MalformedResponse(f"Tag entry without a name in Docker Hub response for {ref}")
            tags.append(name)
        return tags

    def _ghcr_tags(self, ref: RegistryRef, credentials: RegistryCredentials) -> List[str]:
        if not credentials.ghcr_token:
            raise AuthRequired(RegistryKind.GHCR.value)

        url = f"{self.ghcr_url}/v2/{ref.namespace}/{ref.repository}/tags/list"
        headers = {'Authorization': f'Bearer {credentials.ghcr_token}'}

        data = self._get_json(url, {'n': self.ghcr_page_size}, headers)
        tags = data.get('tags') if isinstance(data, dict) else None
        if not isinstance(tags, list) or not all(isinstance(t, str) for t in tags):
            raise MalformedResponse(f"Missing 'tags' list in registry response for {ref}")
        return tags

    def fetch_tags(self, ref: RegistryRef,
                   credentials: Optional[RegistryCredentials] = None) -> List[str]:
        """Return the raw tags published for *ref*, in registry order."""
        kind = RegistryKind.parse(ref.kind)
        credentials = credentials or RegistryCredentials()

        logger.debug(f"Fetching tags for {ref} from {kind.value}")
        if kind is RegistryKind.GHCR:
            tags = self._ghcr_tags(ref, credentials)
        else:
            tags = self._dockerhub_tags(ref, credentials)

        logger.debug(f"Received {len(tags)} tag(s) for {ref}")
        return tags
