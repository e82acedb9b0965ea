from pathlib import Path

from typer.testing import CliRunner

from hearth import __version__
from hearth.main import cli

runner = CliRunner()


def _config(tmp_path: Path, extra: str = "") -> Path:
    path = tmp_path / "config.yaml"
    path.write_text(
        f"storage:\n  data_dir: {tmp_path / 'data'}\nlogging:\n  level: ERROR\n{extra}",
        encoding="utf-8",
    )
    return path


def test_version_command():
    result = runner.invoke(cli, ["version"])
    assert result.exit_code == 0
    assert f"Hearth v{__version__}" in result.output


def test_tools_command_lists_states(tmp_path: Path):
    config = _config(tmp_path, "tools:\n  deny:\n    - call_subordinate\n")

    result = runner.invoke(cli, ["tools", "--config", str(config)])

    assert result.exit_code == 0
    lines = {line.split()[0]: line for line in result.output.splitlines() if line.strip()}
    assert "enabled" in lines["file"]
    assert "denied" in lines["call_subordinate"]
    assert "response" in lines


def test_checkpoints_command_with_none_saved(tmp_path: Path):
    result = runner.invoke(cli, ["checkpoints", "-c", str(_config(tmp_path))])
    assert result.exit_code == 0
    assert "No checkpoints." in result.output
