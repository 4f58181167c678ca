"""Tests for the container stores."""

import json
from unittest.mock import MagicMock, patch

import psycopg
import pytest

from registry_api import RegistryRef
from store import (
    JsonContainerStore, MonitoredContainer, PostgresContainerStore,
    StoreConnectionError, StoreWriteError, open_store,
)

ROWS = {
    "https://deploy.example/hooks/sonarr": {
        "version": "4.0.15",
        "namespace": "linuxserver",
        "repository": "sonarr",
        "image_source": "dockerhub",
        "architecture": None,
    },
    "https://deploy.example/hooks/homarr": {
        "version": "1.40.0",
        "namespace": "homarr-labs",
        "repository": "homarr",
        "image_source": "ghcr",
        "architecture": "amd64",
    },
}


@pytest.fixture
def containers_file(tmp_path):
    path = tmp_path / "containers.json"
    path.write_text(json.dumps(ROWS))
    return path


class TestMonitoredContainer:
    def test_from_row(self):
        container = MonitoredContainer.from_row({
            "webhook_url": "https://h", "version": "1.0", "namespace": "ns",
            "repository": "repo", "image_source": "ghcr", "architecture": "",
        })
        assert container.registry_ref == RegistryRef("ns", "repo", "ghcr")
        assert container.current_version == "1.0"
        assert container.architecture_filter is None
        assert container.name == "ns/repo"

    def test_missing_column(self):
        with pytest.raises(KeyError):
            MonitoredContainer.from_row({"webhook_url": "https://h", "version": "1.0"})


class TestJsonContainerStore:
    def test_list(self, containers_file):
        with JsonContainerStore(str(containers_file)) as store:
            containers = store.list_containers()

        by_url = {c.webhook_url: c for c in containers}
        assert set(by_url) == set(ROWS)
        homarr = by_url["https://deploy.example/hooks/homarr"]
        assert homarr.registry_ref.kind == "ghcr"
        assert homarr.architecture_filter == "amd64"

    def test_missing_file(self, tmp_path):
        with pytest.raises(StoreConnectionError):
            with JsonContainerStore(str(tmp_path / "missing.json")):
                pass

    def test_corrupt_file(self, tmp_path):
        path = tmp_path / "containers.json"
        path.write_text("{not json")
        with pytest.raises(StoreConnectionError):
            JsonContainerStore(str(path)).list_containers()

    def test_wrong_top_level(self, tmp_path):
        path = tmp_path / "containers.json"
        path.write_text("[]")
        with pytest.raises(StoreConnectionError):
            JsonContainerStore(str(path)).list_containers()

    def test_incomplete_row(self, tmp_path):
        path = tmp_path / "containers.json"
        path.write_text(json.dumps({"https://h": {"version": "1.0"}}))
        with pytest.raises(StoreConnectionError):
            JsonContainerStore(str(path)).list_containers()

    def test_numeric_version_read_as_text(self, tmp_path):
        path = tmp_path / "containers.json"
        rows = {
            "https://deploy.example/hooks/a": {**ROWS["https://deploy.example/hooks/sonarr"], "version": 2},
            "https://deploy.example/hooks/b": {**ROWS["https://deploy.example/hooks/sonarr"], "version": "1.0.0"},
        }
        path.write_text(json.dumps(rows))

        containers = JsonContainerStore(str(path)).list_containers()

        assert [c.current_version for c in containers] == ["2", "1.0.0"]

    @pytest.mark.parametrize("field,value", [
        ("version", ["1.0"]),
        ("version", True),
        ("namespace", 7),
        ("repository", None),
        ("image_source", {"kind": "ghcr"}),
        ("architecture", 64),
    ])
    def test_wrongly_typed_field(self, tmp_path, field, value):
        path = tmp_path / "containers.json"
        row = {**ROWS["https://deploy.example/hooks/sonarr"], field: value}
        path.write_text(json.dumps({"https://deploy.example/hooks/secret-token": row}))

        with pytest.raises(StoreConnectionError, match=field) as exc_info:
            JsonContainerStore(str(path)).list_containers()
        assert "secret-token" not in str(exc_info.value)

    def test_row_not_an_object(self, tmp_path):
        path = tmp_path / "containers.json"
        path.write_text(json.dumps({"https://h": "1.0.0"}))
        with pytest.raises(StoreConnectionError):
            JsonContainerStore(str(path)).list_containers()

    def test_update_version(self, containers_file):
        store = JsonContainerStore(str(containers_file))
        store.update_version("https://deploy.example/hooks/sonarr", "4.0.16")

        data = json.loads(containers_file.read_text())
        assert data["https://deploy.example/hooks/sonarr"]["version"] == "4.0.16"
        assert data["https://deploy.example/hooks/homarr"]["version"] == "1.40.0"
        assert not containers_file.with_suffix('.tmp').exists()
        assert not containers_file.with_suffix('.lock').exists()

    def test_update_unknown_webhook(self, containers_file):
        with pytest.raises(StoreWriteError) as exc_info:
            JsonContainerStore(str(containers_file)).update_version("https://nope/secret-token", "1.0")
        assert "secret-token" not in str(exc_info.value)
        assert json.loads(containers_file.read_text()) == ROWS


class TestPostgresContainerStore:
    def test_connect_failure(self):
        with patch("store.psycopg.connect", side_effect=psycopg.OperationalError("refused")):
            with pytest.raises(StoreConnectionError):
                PostgresContainerStore("postgresql://db/wum").connect()

    def test_connect_options(self):
        with patch("store.psycopg.connect") as mock_connect:
            store = PostgresContainerStore("postgresql://db/wum")
            with store:
                pass
        mock_connect.assert_called_once()
        assert mock_connect.call_args.kwargs['autocommit'] is True
        mock_connect.return_value.close.assert_called_once()

    def test_list(self):
        conn = MagicMock()
        conn.execute.return_value.fetchall.return_value = [
            {"webhook_url": url, **row} for url, row in ROWS.items()
        ]
        with patch("store.psycopg.connect", return_value=conn):
            with PostgresContainerStore("postgresql://db/wum") as store:
                containers = store.list_containers()

        assert len(containers) == 2
        assert containers[0].current_version == "4.0.15"

    def test_list_failure_is_fatal(self):
        conn = MagicMock()
        conn.execute.side_effect = psycopg.errors.UndefinedTable("no such table")
        with patch("store.psycopg.connect", return_value=conn):
            with PostgresContainerStore("postgresql://db/wum") as store:
                with pytest.raises(StoreConnectionError):
                    store.list_containers()

    def test_list_without_connect(self):
        with pytest.raises(StoreConnectionError):
            PostgresContainerStore("postgresql://db/wum").list_containers()

    def test_update_version(self):
        conn = MagicMock()
        conn.execute.return_value.rowcount = 1
        with patch("store.psycopg.connect", return_value=conn):
            with PostgresContainerStore("postgresql://db/wum") as store:
                store.update_version("https://h", "1.1.0")

        params = conn.execute.call_args.args[1]
        assert params == ("1.1.0", "https://h")

    def test_update_no_rows(self):
        conn = MagicMock()
        conn.execute.return_value.rowcount = 0
        with patch("store.psycopg.connect", return_value=conn):
            with PostgresContainerStore("postgresql://db/wum") as store:
                with pytest.raises(StoreWriteError):
                    store.update_version("https://h", "1.1.0")

    def test_update_error(self):
        conn = MagicMock()
        conn.execute.side_effect = psycopg.OperationalError("connection lost")
        with patch("store.psycopg.connect", return_value=conn):
            with PostgresContainerStore("postgresql://db/wum") as store:
                with pytest.raises(StoreWriteError):
                    store.update_version("https://h", "1.1.0")


class TestOpenStore:
    def test_json(self):
        store = open_store({"type": "json", "path": "/tmp/c.json"})
        assert isinstance(store, JsonContainerStore)

    def test_postgres(self):
        store = open_store({"type": "postgres", "dsn": "postgresql://db/wum", "table": "apps"})
        assert isinstance(store, PostgresContainerStore)
        assert store.table == "apps"
