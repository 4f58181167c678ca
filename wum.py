#!/usr/bin/env python3
"""
Webhook Upgrade Manager

Checks container registries for newer versions of monitored images and,
when one is found, calls the container's redeploy webhook and records the
new version.  Operators are notified before and after each upgrade.
"""

__version__ = "1.0.0"

import argparse
import json
import logging
import os
import sys
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence
from urllib.parse import urlsplit

import jsonschema
import requests

from notify import build_notifiers, send_notifications
from registry_api import (
    DEFAULT_DOCKERHUB_PAGE_SIZE, DEFAULT_DOCKERHUB_URL, DEFAULT_GHCR_PAGE_SIZE,
    DEFAULT_GHCR_URL, RegistryClient, RegistryCredentials, RegistryError,
)
from release_notes import ReleaseNotesSummarizer, SummaryError, DEFAULT_MODEL, SUMMARY_TIMEOUT
from store import ContainerStore, MonitoredContainer, StoreConnectionError, StoreWriteError, open_store
from tag_select import TagCandidate, TagSelectionError, normalize, resolve_latest
from versions import is_upgrade


# Constants
REQUEST_TIMEOUT = 30
TRIGGER_BODY = "Redeploy with latest image of same tag"
TRIGGER_CONTENT_TYPE = "application/x-www-form-urlencoded"
LOG_FORMAT = '%(asctime)s - [%(name)s] - %(levelname)s - %(message)s'

# Configuration schema
CONFIG_SCHEMA = {
    "type": "object",
    "properties": {
        "store": {
            "type": "object",
            "properties": {
                "type": {"type": "string", "enum": ["json", "postgres"]},
                "path": {"type": "string"},
                "dsn": {"type": "string"},
                "table": {"type": "string", "pattern": "^[A-Za-z_][A-Za-z0-9_]*$"}
            },
            "required": ["type"],
            "if": {"properties": {"type": {"const": "postgres"}}},
            "then": {"required": ["dsn"]},
            "else": {"required": ["path"]}
        },
        "registries": {
            "type": "object",
            "properties": {
                "ghcr_token": {"type": "string"},
                "dockerhub_token": {"type": "string"},
                "dockerhub_url": {"type": "string"},
                "ghcr_url": {"type": "string"},
                "dockerhub_page_size": {"type": "integer", "minimum": 1, "maximum": 100},
                "ghcr_page_size": {"type": "integer", "minimum": 1}
            }
        },
        "notifications": {
            "type": "object",
            "properties": {
                "ntfy": {
                    "type": "object",
                    "properties": {
                        "url": {"type": "string"},
                        "topic": {"type": "string"},
                        "title": {"type": "string"},
                        "priority": {
                            "type": "string",
                            "enum": ["min", "low", "default", "high", "urgent"]
                        },
                        "tags": {"type": "string"},
                        "headers": {
                            "type": "object",
                            "additionalProperties": {"type": "string"}
                        }
                    },
                    "required": ["url", "topic"]
                },
                "telegram": {
                    "type": "object",
                    "properties": {
                        "bot_token": {"type": "string"},
                        "chat_id": {"type": ["string", "integer"]},
                        "api_url": {"type": "string"}
                    },
                    "required": ["bot_token", "chat_id"]
                }
            }
        },
        "release_notes": {
            "type": "object",
            "properties": {
                "url": {"type": "string"},
                "api_key": {"type": "string"},
                "model": {"type": "string"},
                "timeout": {"type": "number", "exclusiveMinimum": 0}
            },
            "required": ["url", "api_key"]
        },
        "request_timeout": {"type": "number", "exclusiveMinimum": 0},
        "allow_insecure_tls": {"type": "boolean"}
    },
    "required": ["store"]
}

logger = logging.getLogger('wum')


class ConfigError(Exception):
    """Configuration could not be loaded or is invalid."""


class TriggerFailed(Exception):
    """The redeploy webhook did not accept the upgrade."""

    def __init__(self, status: Optional[int], message: str = ""):
        self.status = status
        self.message = message
        if status is not None:
            super().__init__(f"Webhook returned {status}: {message}")
        else:
            super().__init__(f"Webhook request failed: {message}")


@dataclass
class Config:
    """Runtime configuration, assembled once at startup."""
    store: Dict[str, Any]
    credentials: RegistryCredentials = field(default_factory=RegistryCredentials)
    registries: Dict[str, Any] = field(default_factory=dict)
    notifications: Dict[str, Any] = field(default_factory=dict)
    release_notes: Optional[Dict[str, Any]] = None
    request_timeout: float = REQUEST_TIMEOUT
    allow_insecure_tls: bool = False

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Config":
        try:
            jsonschema.validate(data, CONFIG_SCHEMA)
        except jsonschema.ValidationError as e:
            raise ConfigError(f"Configuration validation failed: {e.message}") from e

        registries = dict(data.get('registries') or {})
        return cls(
            store=dict(data['store']),
            credentials=RegistryCredentials(
                ghcr_token=registries.pop('ghcr_token', None),
                dockerhub_token=registries.pop('dockerhub_token', None),
            ),
            registries=registries,
            notifications=dict(data.get('notifications') or {}),
            release_notes=data.get('release_notes'),
            request_timeout=data.get('request_timeout', REQUEST_TIMEOUT),
            allow_insecure_tls=data.get('allow_insecure_tls', False),
        )


def _apply_env(data: Dict[str, Any], environ: Mapping[str, str]) -> Dict[str, Any]:
    """Overlay environment variables onto raw config data."""
    store = data.get('store') or {}
    if environ.get('DATABASE_URL'):
        store = {'type': 'postgres', 'dsn': environ['DATABASE_URL'],
                 **({'table': store['table']} if 'table' in store else {})}
    elif environ.get('CONTAINERS_FILE'):
        store = {'type': 'json', 'path': environ['CONTAINERS_FILE']}
    if store:
        data['store'] = store

    registries = data.setdefault('registries', {})
    for env_name, key in (('GHCR_TOKEN', 'ghcr_token'), ('DOCKERHUB_TOKEN', 'dockerhub_token')):
        if environ.get(env_name):
            registries[key] = environ[env_name]

    notifications = data.setdefault('notifications', {})
    for section, pairs in (
        ('ntfy', (('NTFY_URL', 'url'), ('NTFY_TOPIC', 'topic'))),
        ('telegram', (('TELEGRAM_BOT_TOKEN', 'bot_token'), ('TELEGRAM_CHAT_ID', 'chat_id'))),
    ):
        values = {key: environ[env_name] for env_name, key in pairs if environ.get(env_name)}
        if values:
            notifications[section] = {**notifications.get(section, {}), **values}

    release = {key: environ[env_name]
               for env_name, key in (('OPEN_WEBUI_URL', 'url'), ('OLLAMA_API', 'api_key'))
               if environ.get(env_name)}
    if release:
        data['release_notes'] = {**(data.get('release_notes') or {}), **release}

    if environ.get('REQUEST_TIMEOUT'):
        try:
            data['request_timeout'] = float(environ['REQUEST_TIMEOUT'])
        except ValueError:
            raise ConfigError(f"REQUEST_TIMEOUT must be a number, got '{environ['REQUEST_TIMEOUT']}'")
    if environ.get('ALLOW_INSECURE_TLS'):
        data['allow_insecure_tls'] = environ['ALLOW_INSECURE_TLS'].lower() == 'true'

    return data


def load_config(config_file: Optional[str] = None,
                environ: Optional[Mapping[str, str]] = None) -> Config:
    """Load the JSON config file (if present), apply env overrides, validate."""
    environ = os.environ if environ is None else environ
    data: Dict[str, Any] = {}

    if config_file:
        path = Path(config_file)
        if path.exists():
            try:
                with open(path, 'r') as f:
                    data = json.load(f)
            except json.JSONDecodeError as e:
                raise ConfigError(f"Error parsing config file {path}: {e}") from e
            except OSError as e:
                raise ConfigError(f"Could not read config file {path}: {e}") from e
            if not isinstance(data, dict):
                raise ConfigError(f"Config file {path} must contain a JSON object")
        else:
            logger.debug(f"Config file {path} not found, using environment only")

    return Config.from_dict(_apply_env(data, environ))


class Outcome(Enum):
    SKIPPED = "skipped"
    UPGRADED = "upgraded"
    UPGRADE_AVAILABLE = "upgrade_available"
    TRIGGER_FAILED = "trigger_failed"
    PERSIST_FAILED = "persist_failed"
    CHECK_FAILED = "check_failed"


class UpgradeCycleState(Enum):
    CHECKED = "checked"
    SKIPPED = "skipped"
    CHECK_FAILED = "check_failed"
    NOTIFIED_PRE = "notified_pre"
    TRIGGERED = "triggered"
    TRIGGER_FAILED = "trigger_failed"
    PERSISTED = "persisted"
    PERSIST_FAILED = "persist_failed"
    NOTIFIED_POST = "notified_post"


@dataclass
class ContainerResult:
    """What happened to one container during a run."""
    container: MonitoredContainer
    outcome: Optional[Outcome] = None
    states: List[UpgradeCycleState] = field(default_factory=list)
    latest_version: Optional[str] = None
    error: Optional[Exception] = None

    def advance(self, state: UpgradeCycleState) -> None:
        self.states.append(state)

    def finish(self, outcome: Outcome, state: UpgradeCycleState,
               error: Optional[Exception] = None) -> "ContainerResult":
        self.states.append(state)
        self.outcome = outcome
        self.error = error
        return self


@dataclass
class RunReport:
    results: List[ContainerResult] = field(default_factory=list)

    def counts(self) -> Dict[Outcome, int]:
        totals = {outcome: 0 for outcome in Outcome}
        for result in self.results:
            totals[result.outcome] += 1
        return totals


def redact_url(url: str) -> str:
    """Reduce a webhook URL to scheme and host; the path usually carries the secret."""
    parts = urlsplit(url)
    if not parts.hostname:
        return "<webhook>"
    host = f"{parts.hostname}:{parts.port}" if parts.port else parts.hostname
    return f"{parts.scheme}://{host}"


def build_session(config: Config) -> requests.Session:
    """Create the HTTP session shared by every outbound call in a run."""
    session = requests.Session()
    session.headers['User-Agent'] = f"wum/{__version__}"
    if config.allow_insecure_tls:
        logger.warning("TLS certificate verification is disabled (allow_insecure_tls)")
        session.verify = False
    return session


class UpgradeOrchestrator:
    def __init__(self, config: Config, store: ContainerStore, registry: RegistryClient,
                 notifiers: Sequence[Any] = (),
                 summarizer: Optional[ReleaseNotesSummarizer] = None,
                 session: Optional[requests.Session] = None,
                 dry_run: bool = False):
        """
        Initialize the orchestrator.

        Args:
            config: Runtime configuration
            store: Opened container store
            registry: Client used to list tags
            notifiers: Channels for operator notifications
            summarizer: Optional release-note summarizer for pre-upgrade messages
            session: HTTP session used for webhook calls
            dry_run: If True, only log what would be done without making changes
        """
        self.config = config
        self.store = store
        self.registry = registry
        self.notifiers = list(notifiers)
        self.summarizer = summarizer
        self.session = session or requests.Session()
        self.dry_run = dry_run
        self.logger = logger

    def _notify(self, message: str) -> None:
        self.logger.info(f"Sending report: {message}")
        send_notifications(self.notifiers, message)

    def resolve_latest(self, container: MonitoredContainer) -> TagCandidate:
        """Fetch the container's tags and pick the latest version."""
        ref = container.registry_ref
        tags = self.registry.fetch_tags(ref, self.config.credentials)
        return resolve_latest(tags, ref.kind, container.architecture_filter)

    def trigger_upgrade(self, webhook_url: str) -> None:
        """POST the redeploy request to a container's webhook."""
        target = redact_url(webhook_url)
        self.logger.info(f"Sending upgrade trigger to {target}")
        try:
            response = self.session.post(
                webhook_url,
                data=TRIGGER_BODY,
                headers={'Content-Type': TRIGGER_CONTENT_TYPE},
                timeout=self.config.request_timeout,
            )
        except requests.RequestException as e:
            raise TriggerFailed(None, f"{type(e).__name__} while posting to {target}") from e

        if not 200 <= response.status_code < 300:
            raise TriggerFailed(response.status_code, response.reason or "")
        self.logger.debug(f"Webhook accepted upgrade ({response.status_code})")

    def _pre_upgrade_message(self, container: MonitoredContainer, current: str, latest: str) -> str:
        message = f"Starting upgrade for {container.name} from version {current} to {latest}"
        if self.summarizer is None:
            return message

        ref = container.registry_ref
        try:
            summary = self.summarizer.summarize(ref.namespace, ref.repository, ref.kind, current, latest)
        except SummaryError as e:
            self.logger.warning(f"Could not summarize release notes for {container.name}: {e}")
            return message
        return f"{message}\n\n{summary}"

    def process(self, container: MonitoredContainer) -> ContainerResult:
        """Run one container through check, notify, trigger and persist."""
        result = ContainerResult(container=container)
        name = container.name
        self.logger.info(f"Checking {name} ({container.registry_ref.kind})...")

        try:
            latest = self.resolve_latest(container)
        except (RegistryError, TagSelectionError) as e:
            self.logger.error(f"Could not determine latest version for {name}: {e}")
            return result.finish(Outcome.CHECK_FAILED, UpgradeCycleState.CHECK_FAILED, e)

        result.advance(UpgradeCycleState.CHECKED)
        result.latest_version = latest.version
        current = normalize(container.current_version, container.architecture_filter).version
        self.logger.info(f"Comparing current version: {current} with latest version: {latest.version}")

        if not is_upgrade(current, latest.version):
            self.logger.info(f"No update needed for {name}, version {container.current_version} is up-to-date")
            return result.finish(Outcome.SKIPPED, UpgradeCycleState.SKIPPED)

        self.logger.info(f"UPDATE AVAILABLE: {name} {current} -> {latest.version}")
        if self.dry_run:
            self.logger.info(f"[DRY RUN] Would trigger upgrade and record {latest.version} for {name}")
            result.outcome = Outcome.UPGRADE_AVAILABLE
            return result

        self._notify(self._pre_upgrade_message(container, current, latest.version))
        result.advance(UpgradeCycleState.NOTIFIED_PRE)

        try:
            self.trigger_upgrade(container.webhook_url)
        except TriggerFailed as e:
            self.logger.error(f"Failed to trigger upgrade for {name}: {e}")
            self._notify(f"Failed to trigger upgrade for {name} to {latest.version}: {e}")
            return result.finish(Outcome.TRIGGER_FAILED, UpgradeCycleState.TRIGGER_FAILED, e)
        result.advance(UpgradeCycleState.TRIGGERED)

        try:
            self.store.update_version(container.webhook_url, latest.version)
        except StoreWriteError as e:
            self.logger.error(f"Upgrade triggered for {name} but version was not recorded: {e}")
            self._notify(f"Upgrade triggered for {name} but version {latest.version} was not recorded: {e}")
            return result.finish(Outcome.PERSIST_FAILED, UpgradeCycleState.PERSIST_FAILED, e)
        result.advance(UpgradeCycleState.PERSISTED)
        self.logger.info(f"Triggered upgrade for {name}, recorded version {latest.version}")

        self._notify(f"Completed upgrade for {name} from version {current} to {latest.version}")
        return result.finish(Outcome.UPGRADED, UpgradeCycleState.NOTIFIED_POST)

    def run(self) -> RunReport:
        """Process every monitored container once.

        Store errors while listing containers propagate to the caller.
        """
        if self.dry_run:
            self.logger.info("=== DRY RUN MODE ===")

        containers = self.store.list_containers()
        self.logger.info(f"Checking {len(containers)} monitored container(s)")

        report = RunReport()
        for container in containers:
            report.results.append(self.process(container))

        self.logger.info("=== Run Summary ===")
        for result in report.results:
            detail = f" ({result.error})" if result.error else ""
            self.logger.info(f"{result.container.name}: {result.outcome.value}{detail}")
        counts = report.counts()
        self.logger.info(", ".join(f"{outcome.value}={count}" for outcome, count in counts.items()))
        return report


def run_once(config: Config, dry_run: bool = False) -> RunReport:
    """Wire up collaborators from *config* and perform a single run."""
    session = build_session(config)
    registries = config.registries
    registry = RegistryClient(
        session=session,
        dockerhub_url=registries.get('dockerhub_url', DEFAULT_DOCKERHUB_URL),
        ghcr_url=registries.get('ghcr_url', DEFAULT_GHCR_URL),
        dockerhub_page_size=registries.get('dockerhub_page_size', DEFAULT_DOCKERHUB_PAGE_SIZE),
        ghcr_page_size=registries.get('ghcr_page_size', DEFAULT_GHCR_PAGE_SIZE),
        timeout=config.request_timeout,
    )
    notifiers = build_notifiers(config.notifications, session=session, timeout=config.request_timeout)

    summarizer = None
    if config.release_notes:
        summarizer = ReleaseNotesSummarizer(
            config.release_notes['url'],
            config.release_notes['api_key'],
            model=config.release_notes.get('model', DEFAULT_MODEL),
            session=session,
            timeout=config.release_notes.get('timeout', SUMMARY_TIMEOUT),
        )

    with open_store(config.store) as store:
        orchestrator = UpgradeOrchestrator(
            config, store, registry, notifiers,
            summarizer=summarizer, session=session, dry_run=dry_run,
        )
        return orchestrator.run()


def setup_logging(level: str) -> None:
    """Attach the console handler to the root logger once.

    Modules log under their own top-level names (``store``, ``registry_api``
    and so on), so the handler goes on the root logger to cover all of them.
    """
    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper()))
    if not root.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt='%Y-%m-%d %H:%M:%S %Z'))
        root.addHandler(handler)
    # urllib3 logs full request URLs, which can include webhook secrets
    logging.getLogger('urllib3').setLevel(logging.WARNING)


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        description='Registry version checker with webhook-driven upgrades'
    )
    parser.add_argument(
        'config',
        nargs='?',
        default=os.environ.get('CONFIG_FILE', 'config.json'),
        help='Path to configuration JSON file (env: CONFIG_FILE, default: config.json)'
    )
    parser.add_argument(
        '--dry-run',
        action='store_true',
        default=os.environ.get('DRY_RUN', '').lower() == 'true',
        help='Show what would be done without making any changes (env: DRY_RUN)'
    )
    parser.add_argument(
        '--log-level',
        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'],
        default=os.environ.get('LOG_LEVEL', 'INFO'),
        help='Logging level (env: LOG_LEVEL, default: INFO)'
    )

    args = parser.parse_args(argv)
    setup_logging(args.log_level)

    try:
        config = load_config(args.config)
        run_once(config, dry_run=args.dry_run)
    except (ConfigError, StoreConnectionError) as e:
        logger.error(f"Fatal error: {e}")
        return 1
    return 0


if __name__ == '__main__':
    sys.exit(main())
