"""Shared fixtures for wum tests."""

import json
from typing import Dict, List, Optional
from unittest.mock import Mock

import pytest
import requests

from registry_api import RegistryRef
from store import ContainerStore, MonitoredContainer, StoreWriteError
from wum import Config

# ---------------------------------------------------------------------------
# Tag lists as returned by registries (registry order preserved)
# ---------------------------------------------------------------------------

DOCKERHUB_TAG_LISTS = {
    "crazymax/diun": ["latest", "edge", "4.30.0", "4.29.0", "4.28.0", "4.0.0-rc.1"],
    "jellyfin/jellyfin": ["latest", "unstable", "10.11.4", "10.11.1", "10.10.0",
                          "10.11.4-amd64", "latest-amd64"],
    "n8nio/n8n": ["latest", "next", "2.0.3", "1.99.0", "2.0.3-beta"],
    "pihole/pihole": ["latest", "development", "nightly", "2025.11.1", "2025.08.0", "v6"],
}

GHCR_TAG_LISTS = {
    "homarr-labs/homarr": ["latest", "dev", "v1.46.0", "v1.41.0", "v1.40.0", "sha-abc1234"],
    "acme/rolling": ["nightly", "main", "3f9c2ab", "81d0e4c"],
}


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def make_container(namespace="linuxserver", repository="sonarr", kind="dockerhub",
                   version="1.0.0", webhook_url=None, architecture=None) -> MonitoredContainer:
    return MonitoredContainer(
        webhook_url=webhook_url or f"https://deploy.example/hooks/{repository}",
        current_version=version,
        registry_ref=RegistryRef(namespace, repository, kind),
        architecture_filter=architecture,
    )


def make_response(status: int = 200, json_body=None, headers: Optional[Dict[str, str]] = None,
                  text: str = "", reason: str = "") -> Mock:
    """Build a Mock that quacks like requests.Response."""
    response = Mock(spec=requests.Response)
    response.status_code = status
    response.ok = 200 <= status < 400
    response.headers = headers or {}
    response.text = text or (json.dumps(json_body) if json_body is not None else "")
    response.reason = reason
    if json_body is None:
        response.json.side_effect = ValueError("No JSON object could be decoded")
    else:
        response.json.return_value = json_body
    return response


class InMemoryStore(ContainerStore):
    """Store double keeping rows in a dict keyed by webhook URL."""

    def __init__(self, containers: List[MonitoredContainer]):
        self.rows = {c.webhook_url: c for c in containers}
        self.writes: List[tuple] = []
        self.fail_writes_for = set()

    def list_containers(self) -> List[MonitoredContainer]:
        return list(self.rows.values())

    def update_version(self, webhook_url: str, version: str) -> None:
        if webhook_url in self.fail_writes_for:
            raise StoreWriteError(f"write refused for {webhook_url}")
        old = self.rows[webhook_url]
        self.rows[webhook_url] = MonitoredContainer(
            webhook_url=old.webhook_url, current_version=version,
            registry_ref=old.registry_ref, architecture_filter=old.architecture_filter,
        )
        self.writes.append((webhook_url, version))

    def version_of(self, webhook_url: str) -> str:
        return self.rows[webhook_url].current_version


# ---------------------------------------------------------------------------
# Config fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def minimal_config_dict():
    """Minimal valid raw config."""
    return {"store": {"type": "json", "path": "containers.json"}}


@pytest.fixture
def full_config_dict():
    """Raw config exercising all optional sections."""
    return {
        "store": {"type": "postgres", "dsn": "postgresql://wum@db/wum", "table": "containers"},
        "registries": {
            "ghcr_token": "ghp_secret",
            "dockerhub_url": "https://hub.example",
            "ghcr_url": "https://ghcr.example",
            "dockerhub_page_size": 50,
            "ghcr_page_size": 10,
        },
        "notifications": {
            "ntfy": {"url": "ntfy.example", "topic": "upgrades", "priority": "high"},
            "telegram": {"bot_token": "123:abc", "chat_id": 42},
        },
        "release_notes": {"url": "https://webui.example", "api_key": "sk-test"},
        "request_timeout": 10,
        "allow_insecure_tls": False,
    }


@pytest.fixture
def config():
    return Config(store={"type": "json", "path": "containers.json"})


@pytest.fixture
def container():
    return make_container()
