"""Tests for deployment config models and runtime settings."""

from __future__ import annotations

from pathlib import Path

import pytest

from bootstrapper.config import DEFAULT_MTB_VERSION, BootstrapperSettings
from bootstrapper.errors import ConfigValidationError, PlanningError
from bootstrapper.models.artifacts import ArtifactKey, ProverMode
from bootstrapper.models.config import (
    ZERO_HEX32,
    DeploymentConfig,
    GroupConfig,
    check_config,
    dump_config,
    load_config,
    parse_config,
)


def _group(**overrides):
    data = {"tree_depth": 20, "batch_sizes": [10]}
    data.update(overrides)
    return {"groups": {0: data}}


class TestGroupConfig:
    @pytest.mark.parametrize("depth", [16, 32])
    def test_depth_bounds_accepted(self, depth: int):
        config = parse_config(_group(tree_depth=depth))
        assert config.groups[0].tree_depth == depth

    @pytest.mark.parametrize("depth", [15, 33])
    def test_depth_out_of_range_rejected(self, depth: int):
        with pytest.raises(ConfigValidationError, match="tree_depth"):
            parse_config(_group(tree_depth=depth))

    def test_empty_batch_sizes_rejected(self):
        with pytest.raises(ConfigValidationError, match="must not be empty"):
            parse_config(_group(batch_sizes=[]))

    def test_non_positive_batch_size_rejected(self):
        with pytest.raises(ConfigValidationError, match="positive"):
            parse_config(_group(batch_sizes=[10, 0]))

    def test_duplicate_batch_sizes_rejected(self):
        with pytest.raises(ConfigValidationError, match="unique"):
            parse_config(_group(batch_sizes=[10, 10]))

    def test_batch_sizes_alias(self):
        via_alias = parse_config(_group(batch_sizes=[5, 7]))
        via_name = parse_config(
            {"groups": {0: {"tree_depth": 20, "insertion_batch_sizes": [5, 7]}}}
        )
        assert via_alias.groups[0] == via_name.groups[0]
        assert via_alias.groups[0].insertion_batch_sizes == (5, 7)

    def test_deletion_sizes_optional(self):
        group = parse_config(_group()).groups[0]
        assert group.deletion_batch_sizes is None
        assert group.batch_sizes(ProverMode.DELETION) == ()

    def test_invalid_initial_root_rejected(self):
        with pytest.raises(ConfigValidationError, match="initial_root"):
            parse_config(_group(initial_root="0x1234"))

    def test_unknown_field_rejected(self):
        with pytest.raises(ConfigValidationError):
            parse_config(_group(max_batch=5))

    def test_artifact_keys_sorted(self):
        group = GroupConfig(
            tree_depth=20, insertion_batch_sizes=(100, 10), deletion_batch_sizes=(10,)
        )
        keys = group.artifact_keys()
        assert [(k.batch_size, k.mode) for k in keys] == [
            (10, ProverMode.INSERTION),
            (10, ProverMode.DELETION),
            (100, ProverMode.INSERTION),
        ]

    def test_frozen(self):
        group = parse_config(_group()).groups[0]
        with pytest.raises(Exception):
            group.tree_depth = 25  # type: ignore[misc]


class TestDeploymentConfig:
    def test_validation_error_is_planning_error(self):
        with pytest.raises(PlanningError):
            parse_config({"groups": {}})

    def test_negative_group_id_rejected(self):
        with pytest.raises(ConfigValidationError, match="non-negative"):
            parse_config({"groups": {-1: {"tree_depth": 20, "batch_sizes": [1]}}})

    def test_non_mapping_rejected(self):
        with pytest.raises(ConfigValidationError, match="mapping"):
            parse_config(["groups"])

    def test_unique_keys_are_deduplicated(self, scenario_config: DeploymentConfig):
        keys = scenario_config.unique_artifact_keys(ProverMode.INSERTION)
        assert keys == {
            ArtifactKey(mode=ProverMode.INSERTION, tree_depth=30, batch_size=b)
            for b in (10, 100, 1000)
        }
        assert scenario_config.unique_artifact_keys(ProverMode.DELETION) == set()

    def test_misc_default_leaf(self, scenario_config: DeploymentConfig):
        assert scenario_config.misc.initial_leaf_value == ZERO_HEX32

    def test_misc_leaf_normalized(self):
        leaf = "0x" + "AB" * 32
        config = parse_config({**_group(), "misc": {"initial_leaf_value": leaf}})
        assert config.misc.initial_leaf_value == leaf.lower()

    def test_check_config_rejects_unvalidated_instance(self):
        bad = DeploymentConfig.model_construct(
            groups={0: GroupConfig.model_construct(tree_depth=99, insertion_batch_sizes=(1,))}
        )
        with pytest.raises(ConfigValidationError):
            check_config(bad)


class TestLoadConfig:
    def test_load_yaml_with_comments(self, tmp_path: Path):
        path = tmp_path / "deployment.yml"
        path.write_text(
            "# groups to deploy\n"
            "groups:\n"
            "  0:\n"
            "    tree_depth: 30  # mainnet depth\n"
            "    batch_sizes: [10, 100]\n"
            "    deletion_batch_sizes: [10]\n"
            "misc:\n"
            f"  initial_leaf_value: '{ZERO_HEX32}'\n",
            encoding="utf-8",
        )
        config = load_config(path)
        assert config.groups[0].insertion_batch_sizes == (10, 100)
        assert config.groups[0].deletion_batch_sizes == (10,)

    def test_missing_file(self, tmp_path: Path):
        with pytest.raises(ConfigValidationError, match="Cannot read"):
            load_config(tmp_path / "missing.yml")

    def test_invalid_yaml(self, tmp_path: Path):
        path = tmp_path / "broken.yml"
        path.write_text("groups: [unclosed\n", encoding="utf-8")
        with pytest.raises(ConfigValidationError, match="not valid YAML"):
            load_config(path)

    def test_dump_roundtrip(self, tmp_path: Path, scenario_config: DeploymentConfig):
        path = tmp_path / "out.yml"
        path.write_text(dump_config(scenario_config), encoding="utf-8")
        assert load_config(path) == scenario_config


class TestSettings:
    def test_defaults(self):
        s = BootstrapperSettings(_env_file=None)
        assert s.mtb_version == DEFAULT_MTB_VERSION
        assert s.max_attempts == 5
        assert s.pipelined is False
        assert s.config == Path("deployment.yml")

    def test_env_override(self, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setenv("BOOTSTRAPPER_RPC_URL", "http://localhost:8545")
        monkeypatch.setenv("BOOTSTRAPPER_PIPELINED", "true")
        s = BootstrapperSettings(_env_file=None)
        assert s.rpc_url == "http://localhost:8545"
        assert s.pipelined is True

    def test_private_key_hidden_from_repr(self):
        s = BootstrapperSettings(_env_file=None, private_key="0xsecret")
        assert "0xsecret" not in repr(s)

    def test_cache_dir_scoped_to_deployment(self, tmp_path: Path):
        s = BootstrapperSettings(_env_file=None, deployments_dir=tmp_path)
        assert s.resolved_cache_dir("prod") == tmp_path / "prod" / ".cache"

    def test_cache_dir_override(self, tmp_path: Path):
        s = BootstrapperSettings(_env_file=None, cache_dir=tmp_path / "shared")
        assert s.resolved_cache_dir("prod") == tmp_path / "shared"


class TestWorldIdConfig:
    ROOT = "0x" + "01" * 32

    def test_enabled_with_roots(self):
        config = parse_config(
            {
                "misc": {"deploy_world_id": True},
                "groups": {
                    0: {"tree_depth": 20, "batch_sizes": [10], "initial_root": self.ROOT},
                    1: {"tree_depth": 20, "batch_sizes": [10], "initial_root": self.ROOT},
                },
            }
        )
        assert config.misc.deploy_world_id is True

    def test_disabled_by_default(self, scenario_config: DeploymentConfig):
        assert scenario_config.misc.deploy_world_id is False

    def test_initial_root_required(self):
        with pytest.raises(ConfigValidationError, match=r"groups \[0\] need an initial_root"):
            parse_config({**_group(), "misc": {"deploy_world_id": True}})

    def test_group_ids_must_be_contiguous(self):
        with pytest.raises(ConfigValidationError, match=r"0\.\.1"):
            parse_config(
                {
                    "misc": {"deploy_world_id": True},
                    "groups": {
                        0: {"tree_depth": 20, "batch_sizes": [10], "initial_root": self.ROOT},
                        2: {"tree_depth": 20, "batch_sizes": [10], "initial_root": self.ROOT},
                    },
                }
            )
