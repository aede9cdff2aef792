"""Unit tests for the CLI — Typer command registration and basic behavior.

Engine construction is patched to use the in-memory fakes, so the commands
run end to end without mtb, forge or a node.
"""

from __future__ import annotations

from pathlib import Path

import pytest
from typer.testing import CliRunner

from bootstrapper.cli import common
from bootstrapper.cli.app import app
from bootstrapper.models.config import load_config

runner = CliRunner()


@pytest.fixture
def patched_engine(monkeypatch: pytest.MonkeyPatch, make_bootstrapper):
    """Route every CLI command to a Bootstrapper wired to the fakes."""
    monkeypatch.setattr(common, "Bootstrapper", lambda settings, name: make_bootstrapper(name))


@pytest.fixture
def config_file(tmp_path: Path) -> Path:
    path = tmp_path / "deployment.yml"
    path.write_text(
        "groups:\n"
        "  0:\n"
        "    tree_depth: 30\n"
        "    batch_sizes: [100]\n"
        "  1:\n"
        "    tree_depth: 30\n"
        "    batch_sizes: [10, 100, 1000]\n",
        encoding="utf-8",
    )
    return path


# ---------------------------------------------------------------------------
# Test: CLI help and registration
# ---------------------------------------------------------------------------


class TestCliApp:
    """The CLI must register all expected commands and show help."""

    def test_no_args_shows_help(self):
        result = runner.invoke(app, [])
        assert result.exit_code in (0, 2)
        assert "Usage" in result.output or "usage" in result.output.lower()

    def test_help_lists_commands(self):
        result = runner.invoke(app, ["--help"])
        assert result.exit_code == 0
        for command in ("deploy", "plan", "status", "resolve", "init-config"):
            assert command in result.output

    @pytest.mark.parametrize("command", ["deploy", "plan", "status", "resolve", "init-config"])
    def test_command_help(self, command: str):
        result = runner.invoke(app, [command, "--help"])
        assert result.exit_code == 0


# ---------------------------------------------------------------------------
# Test: init-config
# ---------------------------------------------------------------------------


class TestInitConfig:
    def test_writes_loadable_config(self, tmp_path: Path):
        output = tmp_path / "deployment.yml"
        result = runner.invoke(
            app,
            [
                "init-config",
                "-o", str(output),
                "--tree-depth", "20",
                "--batch-sizes", "10,100",
                "--deletion-batch-sizes", "10",
            ],
        )
        assert result.exit_code == 0, result.output
        group = load_config(output).groups[0]
        assert group.tree_depth == 20
        assert group.insertion_batch_sizes == (10, 100)
        assert group.deletion_batch_sizes == (10,)

    def test_refuses_to_overwrite(self, tmp_path: Path):
        output = tmp_path / "deployment.yml"
        output.write_text("keep me", encoding="utf-8")
        result = runner.invoke(app, ["init-config", "-o", str(output)])
        assert result.exit_code == 1
        assert "exists" in result.output
        assert output.read_text(encoding="utf-8") == "keep me"

    def test_force_overwrites(self, tmp_path: Path):
        output = tmp_path / "deployment.yml"
        output.write_text("old", encoding="utf-8")
        result = runner.invoke(app, ["init-config", "-o", str(output), "--force"])
        assert result.exit_code == 0
        assert load_config(output).groups[0].insertion_batch_sizes == (10, 100)

    def test_invalid_depth_rejected(self, tmp_path: Path):
        output = tmp_path / "deployment.yml"
        result = runner.invoke(app, ["init-config", "-o", str(output), "--tree-depth", "40"])
        assert result.exit_code == 1
        assert not output.exists()

    def test_non_integer_batch_sizes_rejected(self, tmp_path: Path):
        output = tmp_path / "deployment.yml"
        result = runner.invoke(app, ["init-config", "-o", str(output), "--batch-sizes", "ten"])
        assert result.exit_code == 1


# ---------------------------------------------------------------------------
# Test: deploy / plan / status / resolve
# ---------------------------------------------------------------------------


class TestDeploymentCommands:
    def test_status_of_unknown_deployment(self, patched_engine):
        result = runner.invoke(app, ["status", "test-deploy"])
        assert result.exit_code == 0
        assert "No recorded steps" in result.output

    def test_plan_lists_steps(self, patched_engine, config_file: Path):
        result = runner.invoke(app, ["plan", "test-deploy", "--config", str(config_file)])
        assert result.exit_code == 0, result.output
        assert "Plan for test-deploy" in result.output
        assert "5 step(s): 3 deploy_verifier, 2 register_group" in result.output

    def test_deploy_then_plan_is_empty(self, patched_engine, config_file: Path, fake_chain):
        result = runner.invoke(app, ["deploy", "test-deploy", "--config", str(config_file)])
        assert result.exit_code == 0, result.output
        assert "Deployment complete" in result.output
        assert len(fake_chain.deployed("Verifier")) == 3

        result = runner.invoke(app, ["plan", "test-deploy", "--config", str(config_file)])
        assert result.exit_code == 0
        assert "Nothing to do" in result.output

        result = runner.invoke(app, ["status", "test-deploy"])
        assert result.exit_code == 0
        assert "No recorded steps" not in result.output

    def test_deploy_failure_exits_nonzero(self, patched_engine, config_file: Path, fake_chain):
        fake_chain.revert_names.add("Verifier")
        result = runner.invoke(app, ["deploy", "test-deploy", "--config", str(config_file)])
        assert result.exit_code == 1
        assert "resume" in result.output

    def test_deploy_with_bad_config(self, patched_engine, tmp_path: Path):
        bad = tmp_path / "bad.yml"
        bad.write_text("groups:\n  0:\n    tree_depth: 99\n    batch_sizes: [1]\n", encoding="utf-8")
        result = runner.invoke(app, ["deploy", "test-deploy", "--config", str(bad)])
        assert result.exit_code == 1
        assert "Planning failed" in result.output

    def test_invalid_deployment_name(self):
        result = runner.invoke(app, ["status", "../escape"])
        assert result.exit_code == 1
        assert "Invalid deployment name" in result.output

    def test_resolve_requires_one_option(self, patched_engine):
        result = runner.invoke(app, ["resolve", "test-deploy", "some-step"])
        assert result.exit_code == 1
        assert "exactly one" in result.output

        result = runner.invoke(
            app, ["resolve", "test-deploy", "some-step", "--retry", "--address", "0x01"]
        )
        assert result.exit_code == 1

    def test_resolve_unknown_step(self, patched_engine):
        result = runner.invoke(app, ["resolve", "test-deploy", "some-step", "--retry"])
        assert result.exit_code == 1
        assert "no record" in result.output

    def test_resolve_flagged_step(self, patched_engine, make_bootstrapper):
        engine = make_bootstrapper()
        step = "deploy_verifier:insertion:30:100"
        engine.store.record_failure("test-deploy", step, "lost receipt", needs_review=True)

        result = runner.invoke(app, ["status", "test-deploy"])
        assert "need review" in result.output

        result = runner.invoke(
            app, ["resolve", "test-deploy", step, "--address", "0x" + "ab" * 20]
        )
        assert result.exit_code == 0, result.output
        assert engine.status().address_of(step) == "0x" + "ab" * 20
