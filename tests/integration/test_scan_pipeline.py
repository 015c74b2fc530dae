"""
Integration test for the full scan pipeline.

Runs the coordinator with the real portal client against an in-process
portal API, then drives the same flow through the CLI:
1. Token exchange (client credentials)
2. Paged team and user fetches
3. Mapping into buffer records
4. Staging + completion events
"""

import json

import pytest
import structlog
import yaml
from click.testing import CliRunner

from acctsync.cli import cli
from acctsync.core import EventPublisher, InvokeCode, ScanCoordinator, ScanKind, ScanState, SyncType
from acctsync.sources import PortalDirectoryClient
from acctsync.store import InMemoryBufferWriter, SourceRegistry


WAIT = 10


@pytest.fixture(autouse=True)
def reset_structlog():
    yield
    structlog.reset_defaults()


def write_sources(path, base_url, **config):
    path.write_text(yaml.safe_dump({
        "sources": [{
            "id": "src-1",
            "name": "Digital Portal",
            "base_url": base_url,
            "client_id": "acct-sync",
            "client_secret": "secret",
            "config": config,
        }],
    }))
    return path


@pytest.mark.integration
def test_team_and_user_scans_end_to_end(portal_server, portal_requests, make_instance,
                                        team_records, user_records):
    """Scan teams and users concurrently and check what was staged"""
    base_url, app = portal_server(teams=team_records, users=user_records)
    registry = SourceRegistry([make_instance(base_url, config={"page_size": 2})])
    writer = InMemoryBufferWriter()
    publisher = EventPublisher()
    events = []
    publisher.subscribe(events.append)

    with ScanCoordinator(registry, PortalDirectoryClient(), writer, publisher) as coordinator:
        teams = coordinator.scan_teams("src-1", auto_publish=True)
        users = coordinator.scan_users("src-1", auto_publish=True)

        assert teams.code is InvokeCode.SUBMITTED
        assert users.code is InvokeCode.SUBMITTED

        teams.future.result(timeout=WAIT)
        users.future.result(timeout=WAIT)

        assert coordinator.get_state(ScanKind.TEAM) is ScanState.IDLE
        assert coordinator.get_state(ScanKind.USER) is ScanState.IDLE

        tree = coordinator.get_team_tree("src-1")
        assert coordinator.get_source_user_id_by_mobile("src-1", "13800000002") == "u2"

    staged_teams = writer.read_teams("src-1")
    staged_users = writer.read_users("src-1")
    assert [t["source_team_id"] for t in staged_teams] == ["100", "101", "102"]
    assert [u["username"] for u in staged_users] == ["user1", "user2"]
    assert sorted(e.sync_type.value for e in events) == ["team", "user"]
    assert [node.team.name for node in tree] == ["Head Office"]

    _, list_requests = portal_requests(app)
    assert all(r["authorization"] == "Bearer tok-1" for r in list_requests)


@pytest.mark.integration
def test_failed_scan_recovers(portal_server, make_instance):
    """A portal outage is logged, published, and the next scan may run"""
    base_url, _ = portal_server(list_status=502)
    registry = SourceRegistry([make_instance(base_url)])
    writer = InMemoryBufferWriter()
    publisher = EventPublisher()
    events = []
    publisher.subscribe(events.append)

    with ScanCoordinator(registry, PortalDirectoryClient(), writer, publisher) as coordinator:
        coordinator.scan_users("src-1", auto_publish=True).future.result(timeout=WAIT)

        assert writer.write_count == 0
        assert [e.sync_type for e in events] == [SyncType.USER]
        assert coordinator.scan_users("src-1").code is InvokeCode.SUBMITTED


@pytest.mark.integration
def test_cli_scan_teams_writes_json(portal_server, tmp_path, team_records):
    """The CLI scans, waits and leaves JSON buffer files behind"""
    base_url, _ = portal_server(teams=team_records)
    config_path = write_sources(tmp_path / "sources.yaml", base_url)
    output_dir = tmp_path / "buffer"

    result = CliRunner().invoke(cli, [
        "--config", str(config_path),
        "scan-teams", "src-1",
        "--publish",
        "--output-dir", str(output_dir),
    ])

    assert result.exit_code == 0, result.output
    data = json.loads((output_dir / "src-1" / "teams.json").read_text(encoding="utf-8"))
    assert len(data) == 3
    assert "Event published" in result.output


@pytest.mark.integration
def test_cli_scan_users_unknown_source(portal_server, tmp_path):
    """An unknown source id exits non-zero with NOT_FOUND"""
    base_url, _ = portal_server()
    config_path = write_sources(tmp_path / "sources.yaml", base_url)

    result = CliRunner().invoke(cli, ["--config", str(config_path), "scan-users", "src-missing"])

    assert result.exit_code == 1
    assert "NOT_FOUND" in result.output


@pytest.mark.integration
def test_cli_sources_and_bad_config(tmp_path):
    """The sources command lists profiles; a bad file exits with code 2"""
    config_path = write_sources(tmp_path / "sources.yaml", "https://portal.example.com")

    listed = CliRunner().invoke(cli, ["--config", str(config_path), "sources"])
    missing = CliRunner().invoke(cli, ["--config", str(tmp_path / "none.yaml"), "sources"])

    assert listed.exit_code == 0
    assert "src-1" in listed.output
    assert missing.exit_code == 2


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
