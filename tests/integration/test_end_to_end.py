"""Integration test — full deployments through the Bootstrapper.

Exercises planning, artifact provisioning, execution, reconciliation after
a crash and the report, all against the shared fakes.
"""

from __future__ import annotations

import pytest
import yaml

from bootstrapper.models.artifacts import ArtifactKind
from bootstrapper.models.config import parse_config
from bootstrapper.models.steps import StepKind

from conftest import SimulatedCrash


class TestFullDeployment:
    def test_scenario_end_to_end(self, make_bootstrapper, scenario_config, fake_chain):
        engine = make_bootstrapper()
        result = engine.deploy(scenario_config)

        assert result.succeeded
        assert [o.step_id.split(":")[0] for o in result.outcomes] == [
            StepKind.DEPLOY_VERIFIER.value,
            StepKind.REGISTER_GROUP.value,
            StepKind.DEPLOY_VERIFIER.value,
            StepKind.DEPLOY_VERIFIER.value,
            StepKind.REGISTER_GROUP.value,
        ]
        for key in scenario_config.artifact_keys():
            assert engine.cache.has(key, ArtifactKind.KEYS)
            assert engine.cache.has(key, ArtifactKind.VERIFIER_CONTRACT)

        report = yaml.safe_load(engine.report_path.read_text(encoding="utf-8"))
        assert set(report["groups"]) == {0, 1}
        assert all(g["registered"] for g in report["groups"].values())

    @pytest.mark.parametrize("pipelined", [False, True])
    def test_crash_and_resume(self, make_bootstrapper, scenario_config, fake_chain, pipelined):
        fake_chain.crash_after_sends = 4
        with pytest.raises(SimulatedCrash):
            make_bootstrapper(pipelined=pipelined).deploy(scenario_config)

        engine = make_bootstrapper(pipelined=pipelined)
        assert not (engine.deployment_dir / "deploy.lock").exists()
        result = engine.deploy(scenario_config)

        assert result.succeeded
        assert len(result.reconciled) == 1
        assert fake_chain.used_nonces() == list(range(9))
        assert len(fake_chain.deployed("Verifier")) == 3
        assert len(fake_chain.deployed("VerifierLookupTable")) == 2

    def test_growing_deployment(self, make_bootstrapper, scenario_config, fake_chain):
        make_bootstrapper().deploy(scenario_config)
        grown = parse_config(
            {
                "groups": {
                    0: {"tree_depth": 30, "batch_sizes": [100]},
                    1: {"tree_depth": 30, "batch_sizes": [10, 100, 1000]},
                    2: {
                        "tree_depth": 16,
                        "batch_sizes": [10],
                        "deletion_batch_sizes": [10],
                    },
                }
            }
        )
        result = make_bootstrapper().deploy(grown)

        assert result.succeeded
        assert len(result.outcomes) == 3
        assert len(result.plan.satisfied) == 5
        # One lookup table per mode for the new group
        assert len(fake_chain.deployed("VerifierLookupTable")) == 4

    def test_separate_deployments_do_not_share_state(
        self, make_bootstrapper, scenario_config, fake_chain
    ):
        make_bootstrapper("first").deploy(scenario_config)
        result = make_bootstrapper("second").deploy(scenario_config)
        assert len(result.outcomes) == 5
        assert len(fake_chain.deployed("Verifier")) == 6

    def test_world_id_stack_in_report(self, make_bootstrapper, fake_chain):
        root = "0x" + "01" * 32
        config = parse_config(
            {
                "misc": {"deploy_world_id": True},
                "groups": {
                    0: {"tree_depth": 30, "batch_sizes": [100], "initial_root": root},
                    1: {"tree_depth": 20, "batch_sizes": [10], "initial_root": root},
                },
            }
        )
        engine = make_bootstrapper()
        assert engine.deploy(config).succeeded

        report = yaml.safe_load(engine.report_path.read_text(encoding="utf-8"))
        managers = report["identity_managers"]
        assert set(managers) == {0, 1}
        assert report["world_id_router"]["routes"] == {
            0: managers[0]["address"],
            1: managers[1]["address"],
        }
        assert report["world_id_router"]["address"] == fake_chain.deployed("WorldIDRouter")[0]["address"]
        assert report["semaphore_verifier"]["address"] == (
            fake_chain.deployed("SemaphoreVerifier")[0]["address"]
        )
        assert report["misc"]["deploy_world_id"] is True
