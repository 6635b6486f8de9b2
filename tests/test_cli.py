from click.testing import CliRunner

import pgupgrader.cli as cli_module
from pgupgrader.errors import PreconditionError
from pgupgrader.models import ClusterInfo


def install_fake_upgrader(monkeypatch, fail_with=None):
    captured = {"calls": []}

    class FakeUpgrader:
        def __init__(self, data_dir, config):
            captured["data_dir"] = data_dir
            captured["config"] = config

        def _record(self, name, *args, **kwargs):
            captured["calls"].append((name, args, kwargs))
            if fail_with is not None:
                raise fail_with

        def upgrade(self, target):
            self._record("upgrade", target)
            return []

        def start(self):
            self._record("start")

        def stop(self):
            self._record("stop")

        def init_db(self, major_version, strict=None):
            self._record("init_db", major_version, strict=strict)

        def reset_password(self, secret, allow_running=False):
            self._record("reset_password", secret.reveal(), allow_running=allow_running)

        def info(self):
            self._record("info")
            return ClusterInfo(data_dir=captured["data_dir"], bin_dir="/pg/16/bin", running=True, version=16)

        def validate_config(self, text, major_version=None):
            self._record("validate_config", text, major_version=major_version)

    monkeypatch.setattr(cli_module, "PostgresUpgrader", FakeUpgrader)
    return captured


def test_cli_upgrade_uses_config_and_allows_cli_override(tmp_path, monkeypatch):
    config_file = tmp_path / "custom.yml"
    config_file.write_text(
        "data_dir: /from/config\n" "socket_dir: /tmp/pg-sockets\n" "wait_timeout: 45\n",
        encoding="utf-8",
    )
    captured = install_fake_upgrader(monkeypatch)

    result = CliRunner().invoke(
        cli_module.main,
        ["--config", str(config_file), "--data-dir", "/from/cli", "upgrade", "--target", "17"],
    )

    assert result.exit_code == 0, result.output
    assert captured["data_dir"] == "/from/cli"
    assert captured["config"].socket_dir == "/tmp/pg-sockets"
    assert captured["config"].wait_timeout == 45.0
    assert captured["calls"] == [("upgrade", (17,), {})]


def test_cli_uses_default_config_file_when_present(tmp_path, monkeypatch):
    (tmp_path / ".pgupgrader.yml").write_text("data_dir: /srv/default\n", encoding="utf-8")
    captured = install_fake_upgrader(monkeypatch)
    monkeypatch.chdir(tmp_path)
    monkeypatch.delenv("PGDATA", raising=False)

    result = CliRunner().invoke(cli_module.main, ["start"])

    assert result.exit_code == 0, result.output
    assert captured["data_dir"] == "/srv/default"
    assert captured["calls"] == [("start", (), {})]


def test_cli_reads_data_dir_from_environment(tmp_path, monkeypatch):
    captured = install_fake_upgrader(monkeypatch)
    monkeypatch.chdir(tmp_path)

    result = CliRunner().invoke(cli_module.main, ["stop"], env={"PGDATA": "/srv/env"})

    assert result.exit_code == 0, result.output
    assert captured["data_dir"] == "/srv/env"


def test_cli_requires_data_dir(tmp_path, monkeypatch):
    install_fake_upgrader(monkeypatch)
    monkeypatch.chdir(tmp_path)
    monkeypatch.delenv("PGDATA", raising=False)

    result = CliRunner().invoke(cli_module.main, ["status"])

    assert result.exit_code != 0
    assert "Missing required option '--data-dir'" in result.output


def test_cli_rejects_unknown_config_keys(tmp_path, monkeypatch):
    config_file = tmp_path / "bad.yml"
    config_file.write_text("retry_count: 3\n", encoding="utf-8")
    install_fake_upgrader(monkeypatch)

    result = CliRunner().invoke(
        cli_module.main, ["--config", str(config_file), "--data-dir", "/srv", "start"]
    )

    assert result.exit_code != 0
    assert "Unknown configuration keys: retry_count" in result.output


def test_cli_init_defaults_to_newest_supported_version(tmp_path, monkeypatch):
    captured = install_fake_upgrader(monkeypatch)
    monkeypatch.chdir(tmp_path)

    result = CliRunner().invoke(cli_module.main, ["--data-dir", "/srv/new", "init", "--no-strict"])

    assert result.exit_code == 0, result.output
    assert captured["calls"] == [("init_db", (17,), {"strict": False})]


def test_cli_reset_password_reads_environment(tmp_path, monkeypatch):
    captured = install_fake_upgrader(monkeypatch)
    monkeypatch.chdir(tmp_path)

    result = CliRunner().invoke(
        cli_module.main,
        ["--data-dir", "/srv", "reset-password", "--allow-running"],
        env={"PGPASSWORD_NEW": "s3cret"},
    )

    assert result.exit_code == 0, result.output
    assert captured["calls"] == [("reset_password", ("s3cret",), {"allow_running": True})]
    assert "s3cret" not in result.output


def test_cli_reset_password_prompts_with_confirmation(tmp_path, monkeypatch):
    captured = install_fake_upgrader(monkeypatch)
    monkeypatch.chdir(tmp_path)
    monkeypatch.delenv("PGPASSWORD_NEW", raising=False)

    result = CliRunner().invoke(
        cli_module.main, ["--data-dir", "/srv", "reset-password"], input="pw1\npw1\n"
    )

    assert result.exit_code == 0, result.output
    assert captured["calls"] == [("reset_password", ("pw1",), {"allow_running": False})]


def test_cli_turns_domain_errors_into_click_errors(tmp_path, monkeypatch):
    install_fake_upgrader(monkeypatch, fail_with=PreconditionError("PostgreSQL is currently running"))
    monkeypatch.chdir(tmp_path)

    result = CliRunner().invoke(cli_module.main, ["--data-dir", "/srv", "upgrade", "--target", "16"])

    assert result.exit_code == 1
    assert "Error: PostgreSQL is currently running" in result.output


def test_cli_status_renders_cluster_info(tmp_path, monkeypatch):
    install_fake_upgrader(monkeypatch)
    monkeypatch.chdir(tmp_path)

    result = CliRunner().invoke(cli_module.main, ["--data-dir", "/srv/data", "status"])

    assert result.exit_code == 0, result.output
    assert "/srv/data" in result.output
    assert "/pg/16/bin" in result.output


def test_cli_validate_config_passes_file_contents(tmp_path, monkeypatch):
    captured = install_fake_upgrader(monkeypatch)
    monkeypatch.chdir(tmp_path)
    conf = tmp_path / "postgresql.conf"
    conf.write_text("max_connections = 10\n", encoding="utf-8")

    result = CliRunner().invoke(
        cli_module.main, ["--data-dir", "/srv", "validate-config", str(conf), "--version", "16"]
    )

    assert result.exit_code == 0, result.output
    assert captured["calls"] == [
        ("validate_config", ("max_connections = 10\n",), {"major_version": 16})
    ]
    assert "OK" in result.output
