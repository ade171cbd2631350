import json
import sys
import pytest
import yaml
from pathlib import Path
from unittest.mock import patch
from typer.testing import CliRunner
from conftest import COPY_SCRIPT, FAIL_SCRIPT, write_file
from mbc.main import app

runner = CliRunner()


def write_tools(path: Path, tools: dict) -> Path:
    path.write_text(json.dumps({"ImageOutputExt": ".avif", "VideoOutputExt": ".h265.mp4", "tools": tools}))
    return path


def copy_tool(script=COPY_SCRIPT, priority=1, **extra):
    return {
        "executable": sys.executable,
        "category": "image",
        "formats": [".jpg", ".png"],
        "priority": priority,
        "arguments": ["-c", script, "$IN$", "$OUT$"],
        **extra,
    }


@pytest.fixture
def cli_env(tmp_path):
    source = tmp_path / "media"
    source.mkdir()
    tools = write_tools(tmp_path / "tools.json", {"pycopy": copy_tool()})
    config = tmp_path / "mbc.yaml"
    config.write_text(yaml.dump({"general": {"bin_dir": None, "log_dir": str(tmp_path / "logs")}}))
    return {"source": source, "tools": tools, "config": config, "logs": tmp_path / "logs", "tmp": tmp_path}


def base_args(env, *extra):
    return [str(env["source"]), "--config", str(env["config"]), "--tools", str(env["tools"]), "--cpu", *extra]


def test_convert_images(cli_env):
    write_file(cli_env["source"] / "photo.jpg", 100)
    write_file(cli_env["source"] / "sub" / "other.png", 100)

    result = runner.invoke(app, base_args(cli_env))

    assert result.exit_code == 0, result.output
    assert (cli_env["source"] / "photo.avif").exists()
    assert (cli_env["source"] / "sub" / "other.avif").exists()
    assert "Conversion summary" in result.output
    assert (cli_env["logs"] / "conversion.log").exists()


def test_dry_run_changes_nothing(cli_env):
    write_file(cli_env["source"] / "photo.jpg", 100)
    stale = write_file(cli_env["source"] / "old.avif.tmp", 100)

    result = runner.invoke(app, base_args(cli_env, "--dry-run"))

    assert result.exit_code == 0, result.output
    assert "Dry run: 1 files to convert" in result.output
    assert not (cli_env["source"] / "photo.avif").exists()
    assert stale.exists()


def test_failed_files_still_exit_zero(cli_env):
    write_tools(cli_env["tools"], {"broken": copy_tool(FAIL_SCRIPT)})
    write_file(cli_env["source"] / "photo.jpg", 100)

    result = runner.invoke(app, base_args(cli_env))

    assert result.exit_code == 0, result.output
    error_logs = list(cli_env["logs"].glob("errors_*.log"))
    assert len(error_logs) == 1
    assert "Attempt: broken" in error_logs[0].read_text(encoding="utf-8")


def test_backup_dir_option(cli_env):
    write_file(cli_env["source"] / "photo.jpg", 100)
    backup = cli_env["tmp"] / "backup"

    result = runner.invoke(app, base_args(cli_env, "--backup-dir", str(backup)))

    assert result.exit_code == 0, result.output
    assert (backup / "photo.jpg").exists()
    assert not (cli_env["source"] / "photo.jpg").exists()


def test_param_override_reaches_command(cli_env):
    script = "import shutil, sys; shutil.copy(sys.argv[1], sys.argv[2]); sys.exit(0 if sys.argv[3] == '42' else 5)"
    tool = copy_tool(script)
    tool["arguments"] = ["-c", script, "$IN$", "$OUT$", "$QUALITY$"]
    tool["parameters"] = {"QUALITY": 60}
    write_tools(cli_env["tools"], {"q": tool})
    write_file(cli_env["source"] / "photo.jpg", 100)

    result = runner.invoke(app, base_args(cli_env, "--param", "quality=42"))

    assert result.exit_code == 0, result.output
    assert (cli_env["source"] / "photo.avif").exists()


def test_missing_source_dir(cli_env):
    result = runner.invoke(app, [str(cli_env["tmp"] / "nope"), "--config", str(cli_env["config"])])

    assert result.exit_code == 1
    assert "Source directory not found" in result.output


def test_invalid_tools_json(cli_env):
    cli_env["tools"].write_text("{broken")

    result = runner.invoke(app, base_args(cli_env))

    assert result.exit_code == 1
    assert "Invalid JSON" in result.output


def test_no_usable_tool(cli_env):
    tool = copy_tool()
    tool["executable"] = str(cli_env["tmp"] / "missing-encoder")
    write_tools(cli_env["tools"], {"ghost": tool})

    result = runner.invoke(app, base_args(cli_env))

    assert result.exit_code == 1
    assert "No usable conversion tool" in result.output


def test_conflicting_source_actions(cli_env):
    result = runner.invoke(app, base_args(cli_env, "--backup-dir", "b", "--delete-source"))

    assert result.exit_code == 1
    assert "mutually exclusive" in result.output


def test_invalid_param_syntax(cli_env):
    result = runner.invoke(app, base_args(cli_env, "--param", "quality"))

    assert result.exit_code == 1
    assert "KEY=VALUE" in result.output


def test_invalid_type_option(cli_env):
    result = runner.invoke(app, base_args(cli_env, "--type", "audio"))

    assert result.exit_code == 1
    assert "media_filter" in result.output


def test_keyboard_interrupt_exits_130(cli_env):
    write_file(cli_env["source"] / "photo.jpg", 100)

    with patch("mbc.main.Orchestrator.run", side_effect=KeyboardInterrupt):
        result = runner.invoke(app, base_args(cli_env))

    assert result.exit_code == 130
    assert "stopped by user" in result.output
