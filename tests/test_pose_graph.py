"""
Tests for the PoseGraph experiment family: dataset generation, problem coordination and simulation.
"""

import os

import numpy as np
import pandas as pd
import pytest
from omegaconf import OmegaConf

from sesync.PoseGraph.coordinator import Coordinator, parse_measurement_rows
from sesync.PoseGraph.generator import InitialPointGenerator, MeasurementGenerator, random_rotation
from sesync.PoseGraph.simulator import Simulator
from sesync.solver.utils import Formulation, SESyncStatus


@pytest.fixture
def dataset_cfg(tmp_path):
    return OmegaConf.create({
        "problem_name": "PoseGraph",
        "instance_name": "small",
        "output_path": str(tmp_path / "dataset" / "PoseGraph" / "small"),
        "num_poses": 8,
        "dimension": 2,
        "rotation_noise": 0.02,
        "translation_noise": 0.02,
        "loop_closure_probability": 0.3,
        "seed": 0,
        "initialpoints": [1],
    })


def simulation_cfg(tmp_path, initialpoint=None, formulation="Simplified"):
    return OmegaConf.create({
        "problem_name": "PoseGraph",
        "problem_instance": "small",
        "problem_initialpoint": initialpoint,
        "problem_coordinator_name": "sesync.PoseGraph.coordinator",
        "dataset_root": str(tmp_path / "dataset"),
        "log_iterations": True,
        "solver_name": ["SESync"],
        "solver_option": {
            "common": {"max_computation_time": 120, "verbose": False, "num_threads": 1},
            "SESync": {"formulation": formulation,
                       "grad_norm_tol": 1.0e-6,
                       "preconditioned_grad_norm_tol": 1.0e-8,
                       "rel_func_decrease_tol": 1.0e-12,
                       "stepsize_tol": 1.0e-8},
        },
        "output_path": str(tmp_path / "output"),
    })


def test_random_rotation():
    rng = np.random.default_rng(0)
    for d in (2, 3):
        R = random_rotation(d, 0.3, rng)
        assert np.allclose(R.T @ R, np.eye(d))
        assert np.isclose(np.linalg.det(R), 1)
    assert np.allclose(random_rotation(3, 0.0, rng), np.eye(3))


def test_generator_writes_dataset(dataset_cfg):
    data = MeasurementGenerator(dataset_cfg).run()
    InitialPointGenerator(dataset_cfg).run()
    path = dataset_cfg.output_path

    for name in ("dim", "num_poses", "measurements", "groundtruth", "initx_1"):
        assert os.path.exists(f"{path}/{name}.csv")
    assert int(np.loadtxt(f"{path}/dim.csv", delimiter=",")) == 2

    rows = np.loadtxt(f"{path}/measurements.csv", delimiter=",", ndmin=2)
    assert rows.shape == (len(data.measurements), 4 + 2 + 4)
    assert np.allclose(rows, data.measurements)
    # The odometry chain comes first
    assert np.array_equal(rows[:7, :2], np.column_stack([np.arange(7), np.arange(1, 8)]))

    initx = np.loadtxt(f"{path}/initx_1.csv", delimiter=",")
    assert initx.shape == (2, 16)
    blocks = initx.reshape(2, 8, 2).transpose(1, 0, 2)
    assert np.allclose(np.linalg.det(blocks), 1)


def test_parse_measurement_rows():
    R = random_rotation(3, 0.4, np.random.default_rng(1))
    row = np.concatenate([[2, 5, 10.0, 20.0], [1.0, 2.0, 3.0], R.ravel()])
    (meas,) = parse_measurement_rows(row, 3)
    assert (meas.i, meas.j) == (2, 5)
    assert (meas.kappa, meas.tau) == (10.0, 20.0)
    assert np.allclose(meas.t, [1.0, 2.0, 3.0])
    assert np.allclose(meas.R, R)
    with pytest.raises(ValueError):
        parse_measurement_rows(row[:-1], 3)


def test_coordinator_builds_problem(dataset_cfg, tmp_path):
    MeasurementGenerator(dataset_cfg).run()
    InitialPointGenerator(dataset_cfg).run()

    problem = Coordinator(simulation_cfg(tmp_path)).run()
    assert problem.num_poses == 8
    assert problem.dimension == 2
    assert problem.formulation == Formulation.Simplified
    assert problem.initialpoint is None

    problem = Coordinator(simulation_cfg(tmp_path, initialpoint=1, formulation="Explicit")).run()
    assert problem.formulation == Formulation.Explicit
    assert problem.initialpoint.shape == (2, problem.N)


def test_coordinator_prefers_g2o_files(tmp_path):
    path = tmp_path / "dataset" / "PoseGraph" / "small"
    path.mkdir(parents=True)
    (path / "measurements.g2o").write_text("EDGE_SE2 0 1 1.0 0.0 0.1 1 0 0 1 0 1\n"
                                           "EDGE_SE2 1 2 1.0 0.0 0.1 1 0 0 1 0 1\n"
                                           "EDGE_SE2 0 2 2.0 0.2 0.2 1 0 0 1 0 1\n")
    problem = Coordinator(simulation_cfg(tmp_path)).run()
    assert problem.num_poses == 3
    assert problem.num_measurements == 3


def test_simulator_runs_and_saves(dataset_cfg, tmp_path):
    MeasurementGenerator(dataset_cfg).run()
    cfg = simulation_cfg(tmp_path)
    outputs = Simulator(cfg).run()

    output = outputs["SESync"]
    assert output.status == SESyncStatus.GlobalOpt

    summary = pd.read_csv(f"{cfg.output_path}/SESync_summary.csv")
    assert summary["status"][0] == "GlobalOpt"
    assert np.isclose(summary["SDPval"][0], output.SDPval)
    for level in output.levels:
        history = pd.read_csv(f"{cfg.output_path}/SESync_level_{level.rank}.csv")
        assert len(history) == len(level.function_values)
    assert os.path.exists(f"{cfg.output_path}/SESync_xhat.csv")
    assert os.path.exists(f"{cfg.output_path}/SESync_Lambda.npz")
    assert not os.path.exists(f"{cfg.output_path}/SESync_levels.csv")
    # The level records are restored after saving
    assert output.levels
