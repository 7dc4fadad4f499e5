from typer.testing import CliRunner

from boardsync import __version__
from boardsync.cli import app


def test_cli_supports_version_flag():
    runner = CliRunner()
    result = runner.invoke(app, ["--version"])

    assert result.exit_code == 0
    assert result.stdout.strip() == f"board-sync {__version__}"


def test_cli_supports_short_version_flag():
    runner = CliRunner()
    result = runner.invoke(app, ["-V"])

    assert result.exit_code == 0
    assert result.stdout.strip() == f"board-sync {__version__}"
