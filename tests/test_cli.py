"""Tests for CLI (subcommands and help)."""

import subprocess
import sys
from pathlib import Path

# Run nixbrew as script (project root has nixbrew.py). NIXBREW_ROOT is set by conftest.
PROJECT_ROOT = Path(__file__).resolve().parent.parent
NIXBREW_SCRIPT = PROJECT_ROOT / "nixbrew.py"


def _run_nixbrew(*args):
    return subprocess.run(
        [sys.executable, str(NIXBREW_SCRIPT)] + list(args),
        capture_output=True,
        text=True,
        cwd=PROJECT_ROOT,
    )


def test_cli_requires_command():
    """CLI requires a subcommand."""
    result = _run_nixbrew()
    assert result.returncode != 0
    assert "required" in result.stderr.lower() or "command" in result.stderr.lower()


def test_cli_help():
    """nixbrew --help lists commands."""
    result = _run_nixbrew("--help")
    assert result.returncode == 0
    assert "nixbrew" in result.stdout
    for command in ("install", "uninstall", "upgrade", "pin", "rollback", "history"):
        assert command in result.stdout


def test_cli_install_help():
    """nixbrew install --help shows package and version arguments."""
    result = _run_nixbrew("install", "--help")
    assert result.returncode == 0
    assert "package" in result.stdout
    assert "version" in result.stdout


def test_cli_list_no_packages(tmp_path):
    result = _run_nixbrew("--root", str(tmp_path), "list")
    assert result.returncode == 0
    assert "No packages installed" in result.stdout


def test_cli_history_unknown_package(tmp_path):
    result = _run_nixbrew("--root", str(tmp_path), "history", "ripgrep")
    assert result.returncode == 0
    assert "No history recorded for ripgrep" in result.stdout


def test_cli_rollback_not_installed(tmp_path):
    result = _run_nixbrew("--root", str(tmp_path), "rollback", "ripgrep", "14.0.3")
    assert result.returncode == 1
    assert result.stderr.startswith("Error:")
    assert "not installed" in result.stderr


def test_cli_corrupt_registry_reported(tmp_path):
    registry = tmp_path / "registry.json"
    registry.write_text("{broken")
    result = _run_nixbrew("--root", str(tmp_path), "list")
    assert result.returncode == 1
    assert "Registry file" in result.stderr
    assert registry.read_text() == "{broken"


def test_cli_update_clears_cache(tmp_path):
    result = _run_nixbrew("--root", str(tmp_path), "update")
    assert result.returncode == 0
    assert "Cleared 0 cached resolution(s)" in result.stdout


def test_cli_bad_config(tmp_path):
    (tmp_path / "config.yaml").write_text("tie_break: oldest\n")
    result = _run_nixbrew("--root", str(tmp_path), "list")
    assert result.returncode == 1
    assert "tie_break" in result.stderr
