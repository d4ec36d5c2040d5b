"""
Test Suite for the click CLI.

Uses CliRunner with an isolated environment pointing at a temporary SQLite file;
uvicorn is mocked so no server is started.
"""

from unittest.mock import patch

import pytest
from click.testing import CliRunner

from taskboard.api import app
from taskboard.cli import main
from taskboard.database import SQLiteTaskDatabase


@pytest.fixture
def runner_env(tmp_path):
    db_path = tmp_path / "cli.db"
    env = {"DATABASE_PATH": str(db_path), "DATABASE_URL": None, "MYSQL_URL": None,
           "HOST": None, "PORT": None, "LOG_LEVEL": None}
    return CliRunner(), env, db_path


class TestDatabaseCommands:

    def test_init_db_creates_schema(self, runner_env):
        runner, env, db_path = runner_env
        result = runner.invoke(main, ["init-db"], env=env)
        assert result.exit_code == 0, result.output
        assert "Schema initialized on sqlite backend" in result.output
        assert db_path.exists()

    def test_create_admin_user(self, runner_env):
        runner, env, db_path = runner_env
        result = runner.invoke(main, ["create-user", "Alice", "--email", "alice@example.com", "--admin"], env=env)
        assert result.exit_code == 0, result.output
        assert "Created admin account Alice with id 1" in result.output

        with SQLiteTaskDatabase(str(db_path)) as db:
            assert db.get_user_role(1) == "admin"

    def test_create_regular_user(self, runner_env):
        runner, env, _ = runner_env
        result = runner.invoke(main, ["create-user", "Bob"], env=env)
        assert result.exit_code == 0, result.output
        assert "Created user account Bob" in result.output

    def test_bad_mysql_url_reported(self, runner_env):
        runner, env, _ = runner_env
        env = dict(env, MYSQL_URL="mysql://missing-database")
        result = runner.invoke(main, ["init-db"], env=env)
        assert result.exit_code != 0
        assert "MySQL URL must include a host and a database name" in result.output


class TestServeCommand:

    def teardown_method(self):
        if hasattr(app.state, "settings"):
            del app.state.settings

    def test_serve_passes_settings_to_app(self, runner_env):
        runner, env, db_path = runner_env
        with patch("uvicorn.run") as run:
            result = runner.invoke(main, ["serve", "--port", "8123"], env=env)

        assert result.exit_code == 0, result.output
        run.assert_called_once_with(app, host="0.0.0.0", port=8123, log_level="info")
        assert app.state.settings.database_path == str(db_path)

    def test_serve_reload_uses_import_string(self, runner_env):
        runner, env, _ = runner_env
        with patch("uvicorn.run") as run:
            result = runner.invoke(main, ["serve", "--host", "127.0.0.1", "--reload"], env=env)

        assert result.exit_code == 0, result.output
        run.assert_called_once_with("taskboard.api:app", host="127.0.0.1", port=8000,
                                    reload=True, log_level="info")

    def test_invalid_port_env(self, runner_env):
        runner, env, _ = runner_env
        result = runner.invoke(main, ["serve"], env=dict(env, PORT="eighty"))
        assert result.exit_code != 0
        assert "Invalid configuration" in result.output
