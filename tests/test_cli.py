from __future__ import annotations

import pytest

from devops_insights import cli


@pytest.fixture
def cli_env(monkeypatch, tmp_path):
    monkeypatch.setenv("DISABLE_DOTENV", "1")
    monkeypatch.delenv("POSTGRES_URI", raising=False)
    monkeypatch.delenv("DATABASE_URL", raising=False)
    monkeypatch.setenv("DATABASE_URI", f"sqlite:///{tmp_path}/cli.db")
    return tmp_path


def test_parser_sync_run_defaults_to_incremental():
    ns = cli.build_parser().parse_args(["sync", "run", "repo-id"])
    assert ns.repository_id == "repo-id"
    assert ns.sync_type == "incremental"
    assert ns.func is cli._cmd_sync_run


def test_parser_rejects_unknown_sync_type():
    with pytest.raises(SystemExit):
        cli.build_parser().parse_args(
            ["sync", "run", "repo-id", "--type", "partial"]
        )


def test_parser_api_options(monkeypatch):
    monkeypatch.setenv("API_PORT", "9001")
    ns = cli.build_parser().parse_args(["api", "--reload"])
    assert ns.port == 9001
    assert ns.reload is True


def test_load_dotenv_keeps_existing_values(monkeypatch, tmp_path):
    env_file = tmp_path / ".env"
    env_file.write_text(
        "# comment\n"
        "export INSIGHTS_A='quoted'\n"
        "INSIGHTS_B=from-file\n"
        "not a pair\n",
        encoding="utf-8",
    )
    monkeypatch.delenv("INSIGHTS_A", raising=False)
    monkeypatch.setenv("INSIGHTS_B", "from-env")

    assert cli._load_dotenv(env_file) == 1
    assert cli.os.environ["INSIGHTS_A"] == "quoted"
    assert cli.os.environ["INSIGHTS_B"] == "from-env"
    monkeypatch.delenv("INSIGHTS_A")


def test_load_dotenv_missing_file(tmp_path):
    assert cli._load_dotenv(tmp_path / "missing.env") == 0


def test_db_init_and_admin_commands(cli_env, capsys):
    assert cli.main(["db", "init"]) == 0
    assert "Database initialized (2 roles created)" in capsys.readouterr().out

    assert cli.main(["admin", "seed-roles"]) == 0
    assert "Default roles already present" in capsys.readouterr().out

    args = [
        "admin",
        "create-user",
        "--name",
        "Dana Admin",
        "--email",
        "dana@contoso.com",
        "--login",
        "dana",
        "--password",
        "s3cret!",
    ]
    assert cli.main(args + ["--role", "admin"]) == 0
    assert "Created user: dana@contoso.com" in capsys.readouterr().out

    assert cli.main(args) == 1
    assert "Error:" in capsys.readouterr().out

    assert cli.main(args + ["--role", "nope"]) == 1
    assert "role 'nope' not found" in capsys.readouterr().out


def test_sync_run_unknown_repository(cli_env):
    assert cli.main(["db", "init"]) == 0
    repository_id = "00000000-0000-0000-0000-000000000000"
    assert cli.main(["sync", "run", repository_id]) == 1
