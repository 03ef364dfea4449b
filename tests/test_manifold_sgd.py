# tests/test_manifold_sgd.py

import os

import numpy as np
import pytest

from manifold_sgd import (
    NUM_WEIGHTS,
    SgdSettings,
    active_constraint_mask,
    compute_theta_step,
    initial_theta,
    read_batch,
    read_csv,
    run_sgd,
    write_csv,
)


def _batch(y, w, nt=1, theta=None):
    B = np.zeros((1, nt))
    B[0, 0] = 1.0
    return {
        "A": np.array([[1.0, 0.0]]),
        "B": B,
        "H": np.eye(2),
        "lb": np.array([[0.0]]),
        "ub": np.array([[0.0]]),
        "y": np.array([[y]]),
        "w": np.array(w, dtype=float).reshape(-1, 1),
        "z": np.zeros((2, 1)),
        "theta": np.zeros((nt, 1)) if theta is None else theta.reshape(-1, 1),
    }


def test_active_constraint_mask():
    y = np.array([0.0, 0.5, 1.0, 1.0 - 5e-5])
    mask = active_constraint_mask(y, np.zeros(4), np.ones(4))
    np.testing.assert_array_equal(mask, [True, False, True, True])


def test_step_along_active_constraint():
    dtheta = compute_theta_step([_batch(0.0, [1.0, 0.0])])

    # g = [0.5, 0, -0.5], g^T g = 0.5, g^T H g = 0.25 + 0.01 * 0.25
    assert dtheta.shape == (1,)
    assert dtheta[0] == pytest.approx(0.1 * 0.5 * 0.5 / 0.2525)


def test_inactive_constraints_do_not_move_theta():
    batch = _batch(0.5, [1.0, 0.0])
    batch["lb"] = np.array([[-1.0]])
    batch["ub"] = np.array([[1.0]])
    np.testing.assert_allclose(compute_theta_step([batch]), [0.0])


def test_zero_gradient_gives_zero_step():
    np.testing.assert_array_equal(compute_theta_step([_batch(0.0, [0.0, 0.0])]), [0.0])


def test_batches_must_share_weights():
    b1 = _batch(0.0, [1.0, 0.0])
    b2 = _batch(0.0, [1.0, 0.0], theta=np.ones(1))
    with pytest.raises(ValueError, match="different weights"):
        compute_theta_step([b1, b2])

    b3 = _batch(0.0, [1.0, 0.0], nt=2)
    with pytest.raises(ValueError, match="weights"):
        compute_theta_step([b1, b3])


def test_read_batch_checks_vector_fields(tmp_path):
    directory = str(tmp_path)
    for name, value in _batch(0.0, [1.0, 0.0]).items():
        if name == "theta":
            write_csv(os.path.join(directory, "0_theta.csv"), value)
        else:
            write_csv(os.path.join(directory, f"0_0_{name}.csv"), value)

    data = read_batch(directory, 0, 0)
    np.testing.assert_allclose(data["A"], [[1.0, 0.0]])
    assert data["w"].shape == (2, 1)

    write_csv(os.path.join(directory, "0_0_z.csv"), np.zeros((2, 2)))
    with pytest.raises(ValueError, match="single column"):
        read_batch(directory, 0, 0)


class FakeTrajectoryOptimizer:
    """Writes one active constraint coupling z_0 and theta_0."""

    def __init__(self):
        self.calls = []

    def __call__(self, length, duration, snopt_iter, directory, init_z, weights, prefix):
        self.calls.append((length, duration, weights, prefix))
        theta = read_csv(os.path.join(directory, weights))
        B = np.zeros((1, theta.shape[0]))
        B[0, 0] = 1.0
        fields = {
            "A": np.array([[1.0, 0.0]]),
            "B": B,
            "H": np.eye(2),
            "lb": np.zeros(1),
            "ub": np.zeros(1),
            "y": np.zeros(1),
            "w": np.array([1.0, 0.0]),
            "z": np.zeros(2),
        }
        for name, value in fields.items():
            write_csv(os.path.join(directory, f"{prefix}{name}.csv"), value)


def test_run_sgd(tmp_path):
    settings = SgdSettings(n_iterations=2, n_batch=3)
    optimizer = FakeTrajectoryOptimizer()
    theta = run_sgd(optimizer, str(tmp_path), np.random.default_rng(7), settings)

    assert len(optimizer.calls) == 1 + 2 * 3
    assert optimizer.calls[0] == (0.5, 1.0, "0_theta.csv", "0_0_")
    assert [c[3] for c in optimizer.calls[1:4]] == ["1_0_", "1_1_", "1_2_"]
    assert all(c[2] == "2_theta.csv" for c in optimizer.calls[4:])

    for length, duration, _, _ in optimizer.calls[1:]:
        assert 0.3 <= length <= 0.5
        assert duration == pytest.approx(length / settings.speed)

    theta1 = read_csv(str(tmp_path / "1_theta.csv")).reshape(-1)
    expected = initial_theta()
    expected[0] += 0.1 * 0.5 * 0.5 / 0.2525
    np.testing.assert_allclose(theta1, expected)

    assert theta.shape == (NUM_WEIGHTS,)
    np.testing.assert_allclose(read_csv(str(tmp_path / "2_theta.csv")).reshape(-1), theta)


def test_run_sgd_is_reproducible_with_seed(tmp_path):
    settings = SgdSettings(n_iterations=2, n_batch=2)

    first = FakeTrajectoryOptimizer()
    theta_a = run_sgd(first, str(tmp_path / "a"), np.random.default_rng(11), settings)
    second = FakeTrajectoryOptimizer()
    theta_b = run_sgd(second, str(tmp_path / "b"), np.random.default_rng(11), settings)

    assert [c[0] for c in first.calls] == [c[0] for c in second.calls]
    np.testing.assert_array_equal(theta_a, theta_b)
