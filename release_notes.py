"""Release-note risk summaries through an Open WebUI instance.

A web search for the upgrade's release notes is run first, then the results
are handed to a chat model that answers whether the upgrade is safe.
"""

import logging
from typing import Optional

import requests

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "llama3.1:8b"
SUMMARY_TIMEOUT = 120

CONTAINER_URLS = {
    "dockerhub": "https://hub.docker.com/r/{namespace}/{repository}",
    "ghcr": "https://ghcr.io/{namespace}/{repository}",
}

PROMPT = (
    "We are upgrading a container from version {current} to {latest}. "
    "Please make entire output in clean readable format for mobile users for "
    "notification purposes, ensure that the upgrade process between versions "
    "don't have any major issues or requirements, providing only the necessary "
    "information.\n\n"
    "Formatting standard as:\n"
    "Namespace: {namespace}\n"
    "New version: {latest}\n"
    "Safe to Upgrade? Yes/No\n"
    "Summary of impact:\n\n"
    "Confirm whether there are any breaking changes by providing a true or false "
    "statement based on the web search query. If there are breaking changes, list "
    "them in the summary. Do not hesitate to get to the point; minor changes can "
    "be listed as safe if no user actions are required."
)


class SummaryError(Exception):
    """The summarizer could not produce a summary."""


class ReleaseNotesSummarizer:
    def __init__(self, url: str, api_key: str, model: str = DEFAULT_MODEL,
                 session: Optional[requests.Session] = None,
                 timeout: float = SUMMARY_TIMEOUT):
        self.url = url.rstrip('/')
        self.model = model
        self.session = session or requests.Session()
        self.timeout = timeout
        self._headers = {
            'Authorization': f'Bearer {api_key}',
            'Content-Type': 'application/json',
        }

    def _post(self, path: str, body: dict) -> dict:
        try:
            response = self.session.post(
                f"{self.url}{path}", json=body, headers=self._headers, timeout=self.timeout
            )
            response.raise_for_status()
            data = response.json()
        except requests.RequestException as e:
            raise SummaryError(f"Request to {path} failed: {e}") from e
        except ValueError as e:
            raise SummaryError(f"Invalid JSON from {path}: {e}") from e
        if not isinstance(data, dict):
            raise SummaryError(f"Unexpected response shape from {path}")
        return data

    def summarize(self, namespace: str, repository: str, image_source: str,
                  current: str, latest: str) -> str:
        template = CONTAINER_URLS.get(image_source)
        if template is None:
            raise SummaryError(f"Unsupported image source '{image_source}'")
        container_url = template.format(namespace=namespace, repository=repository)

        query = (f"Upgrading {container_url} from {current} to {latest} "
                 f"release notes or breaking changes requirements")
        logger.debug(f"Searching release notes: {query}")
        search = self._post('/rag/api/v1/web/search', {'collection_name': '', 'query': query})

        filenames = search.get('filenames') or []
        if not isinstance(filenames, list):
            raise SummaryError("Search response field 'filenames' is not a list")
        urls = [u for u in filenames if isinstance(u, str)]
        chat = self._post('/ollama/api/chat', {
            'stream': False,
            'model': self.model,
            'options': {},
            'files': [{
                'collection_name': search.get('collection_name') or '',
                'name': query,
                'type': 'web_search_results',
                'urls': urls,
            }],
            'messages': [{
                'role': 'user',
                'content': PROMPT.format(current=current, latest=latest, namespace=namespace),
            }],
        })

        message = chat.get('message')
        if not isinstance(message, dict):
            raise SummaryError("Chat response has no message object")
        content = message.get('content')
        if not content or not isinstance(content, str):
            raise SummaryError("Chat response contained no content")
        return content
