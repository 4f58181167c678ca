"""Storage for monitored containers.

Rows are keyed by ``webhook_url`` and carry ``version``, ``namespace``,
``repository``, ``image_source`` and an optional ``architecture``.  A store
is opened once per run and every ``update_version`` call is committed on its
own, so an interrupted run leaves earlier upgrades in place.
"""

import json
import logging
import platform
import time
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional

import psycopg
from psycopg import sql
from psycopg.rows import dict_row

from registry_api import RegistryRef

IS_WINDOWS = platform.system() == 'Windows'
if not IS_WINDOWS:
    import fcntl
else:
    import msvcrt

logger = logging.getLogger(__name__)

DEFAULT_TABLE = "containers"


class StoreConnectionError(Exception):
    """The store could not be opened or read.  Aborts the run."""


class StoreWriteError(Exception):
    """A version could not be written for one container."""


@dataclass(frozen=True)
class MonitoredContainer:
    """One tracked deployment."""
    webhook_url: str
    current_version: str
    registry_ref: RegistryRef
    architecture_filter: Optional[str] = None

    @property
    def name(self) -> str:
        return str(self.registry_ref)

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "MonitoredContainer":
        return cls(
            webhook_url=row['webhook_url'],
            current_version=row['version'] or '',
            registry_ref=RegistryRef(
                namespace=row['namespace'],
                repository=row['repository'],
                kind=row['image_source'],
            ),
            architecture_filter=row.get('architecture') or None,
        )


_TEXT_FIELDS = ('namespace', 'repository', 'image_source')


def _check_row(position: int, webhook_url: str, row: Any) -> Dict[str, Any]:
    """Validate one JSON row; numeric versions are read as text."""
    if not isinstance(row, dict):
        raise StoreConnectionError(f"Container #{position} must be an object")
    for key in ('version',) + _TEXT_FIELDS:
        if key not in row:
            raise StoreConnectionError(f"Container #{position} is missing '{key}'")
    for key in _TEXT_FIELDS:
        if not isinstance(row[key], str):
            raise StoreConnectionError(f"Container #{position}: '{key}' must be a string")

    version = row['version']
    if isinstance(version, bool) or not isinstance(version, (str, int, float, type(None))):
        raise StoreConnectionError(f"Container #{position}: 'version' must be a string")
    if isinstance(version, (int, float)):
        version = str(version)

    architecture = row.get('architecture')
    if architecture is not None and not isinstance(architecture, str):
        raise StoreConnectionError(f"Container #{position}: 'architecture' must be a string")
    return {**row, 'version': version, 'webhook_url': webhook_url}


class ContainerStore:
    """Base class for stores; usable as a context manager around one run."""

    def connect(self) -> None:
        pass

    def close(self) -> None:
        pass

    def list_containers(self) -> List[MonitoredContainer]:
        raise NotImplementedError

    def update_version(self, webhook_url: str, version: str) -> None:
        raise NotImplementedError

    def __enter__(self) -> "ContainerStore":
        self.connect()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


class JsonContainerStore(ContainerStore):
    """Containers kept in a JSON object keyed by webhook URL.

    Example file::

        {
          "https://deploy.example/hooks/abc": {
            "version": "1.0.0",
            "namespace": "linuxserver",
            "repository": "sonarr",
            "image_source": "dockerhub",
            "architecture": null
          }
        }
    """

    def __init__(self, path: str):
        self.path = Path(path)

    @contextmanager
    def _file_lock(self):
        """Context manager for file locking."""
        lock_file = self.path.with_suffix('.lock')
        fp = open(lock_file, 'w')
        try:
            if IS_WINDOWS:
                while True:
                    try:
                        msvcrt.locking(fp.fileno(), msvcrt.LK_NBLCK, 1)
                        break
                    except IOError:
                        time.sleep(0.1)
            else:
                fcntl.flock(fp, fcntl.LOCK_EX)
            yield
        finally:
            if IS_WINDOWS:
                try:
                    msvcrt.locking(fp.fileno(), msvcrt.LK_UNLCK, 1)
                except (OSError, IOError):
                    pass
            else:
                fcntl.flock(fp, fcntl.LOCK_UN)
            fp.close()
            try:
                lock_file.unlink()
            except (OSError, FileNotFoundError):
                pass

    def _read(self) -> Dict[str, Dict[str, Any]]:
        with open(self.path, 'r') as f:
            data = json.load(f)
        if not isinstance(data, dict):
            raise ValueError("top level must be an object keyed by webhook URL")
        return data

    def connect(self) -> None:
        if not self.path.exists():
            raise StoreConnectionError(f"Containers file {self.path} not found")

    def list_containers(self) -> List[MonitoredContainer]:
        try:
            with self._file_lock():
                data = self._read()
        except (OSError, ValueError) as e:
            raise StoreConnectionError(f"Could not read {self.path}: {e}") from e

        containers = [
            MonitoredContainer.from_row(_check_row(position, webhook_url, row))
            for position, (webhook_url, row) in enumerate(data.items(), 1)
        ]
        logger.debug(f"Loaded {len(containers)} container(s) from {self.path}")
        return containers

    def update_version(self, webhook_url: str, version: str) -> None:
        try:
            with self._file_lock():
                data = self._read()
                if webhook_url not in data:
                    raise StoreWriteError("No container registered for this webhook URL")
                data[webhook_url]['version'] = version

                temp_file = self.path.with_suffix('.tmp')
                with open(temp_file, 'w') as f:
                    json.dump(data, f, indent=2)
                temp_file.replace(self.path)
        except (OSError, ValueError) as e:
            raise StoreWriteError(f"Could not write {self.path}: {e}") from e


class PostgresContainerStore(ContainerStore):
    """Containers kept in a PostgreSQL table."""

    def __init__(self, dsn: str, table: str = DEFAULT_TABLE):
        self.dsn = dsn
        self.table = table
        self._conn: Optional[psycopg.Connection] = None

    def connect(self) -> None:
        logger.info("Connecting to database")
        try:
            self._conn = psycopg.connect(self.dsn, autocommit=True, row_factory=dict_row)
        except psycopg.Error as e:
            raise StoreConnectionError(f"Could not connect to database: {e}") from e

    def close(self) -> None:
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    @property
    def conn(self) -> psycopg.Connection:
        if self._conn is None:
            raise StoreConnectionError("Store is not connected")
        return self._conn

    def list_containers(self) -> List[MonitoredContainer]:
        query = sql.SQL(
            "SELECT webhook_url, version, namespace, repository, image_source, architecture "
            "FROM {}"
        ).format(sql.Identifier(self.table))
        try:
            rows = self.conn.execute(query).fetchall()
        except psycopg.Error as e:
            raise StoreConnectionError(f"Could not fetch containers: {e}") from e

        logger.debug(f"Fetched {len(rows)} container row(s) from {self.table}")
        return [MonitoredContainer.from_row(row) for row in rows]

    def update_version(self, webhook_url: str, version: str) -> None:
        query = sql.SQL("UPDATE {} SET version = %s WHERE webhook_url = %s").format(
            sql.Identifier(self.table)
        )
        try:
            cursor = self.conn.execute(query, (version, webhook_url))
        except psycopg.Error as e:
            raise StoreWriteError(f"Could not update version: {e}") from e
        if cursor.rowcount == 0:
            raise StoreWriteError("No container registered for this webhook URL")


def open_store(store_config: Dict[str, Any]) -> ContainerStore:
    """Build the store described by the ``store`` config section."""
    store_type = store_config.get('type', 'json')
    if store_type == 'postgres':
        return PostgresContainerStore(store_config['dsn'], store_config.get('table', DEFAULT_TABLE))
    return JsonContainerStore(store_config.get('path', 'containers.json'))
