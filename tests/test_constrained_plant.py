# tests/test_constrained_plant.py

import numpy as np
import pytest

from autodiff_utils import (
    autodiff_solve,
    autodiff_to_gradient,
    autodiff_to_value,
    initialize_autodiff,
)
from constrained_plant import ContactInfo, PlanarLinkage


def test_contact_info_requires_one_point_per_frame():
    with pytest.raises(ValueError, match="frames"):
        ContactInfo(frame_names=["toe_left", "toe_right"], points=[np.zeros(3)])


def test_contact_info_items():
    info = ContactInfo(frame_names=["toe_left"], points=[[0.0, 0.1, -0.2]])
    assert info.num_contacts == 1
    name, point = info.items()[0]
    assert name == "toe_left"
    np.testing.assert_allclose(point, [0.0, 0.1, -0.2])


def test_contact_jacobian_rows_come_in_threes():
    with pytest.raises(ValueError, match="3 rows"):
        PlanarLinkage(contact_jacobian=np.zeros((2, 2)))


def test_bad_actuation_matrix():
    with pytest.raises(ValueError, match="actuation_matrix"):
        PlanarLinkage(actuation_matrix=np.ones((3, 1)))


def test_default_linkage_sizes():
    plant = PlanarLinkage()
    assert plant.num_positions() == 2
    assert plant.num_states() == 4
    assert plant.num_actuators() == 1
    assert plant.num_position_constraints() == 1
    assert plant.num_contacts() == 0
    assert plant.num_forces() == 1
    assert plant.calc_contact_jacobian(np.zeros(4)).shape == (0, 2)


def test_time_derivatives():
    plant = PlanarLinkage(masses=(2.0, 1.0), stiffness=1.0, damping=0.5)
    x = np.array([0.1, -0.2, 1.0, 0.0])
    xdot = plant.calc_time_derivatives(x, np.array([3.0]), np.array([0.4]))

    # tau = B u - K q - D v + J_h^T lambda
    tau = np.array([3.0 - 0.1 - 0.5 + 0.4, 0.2 - 0.4])
    np.testing.assert_allclose(xdot[:2], [1.0, 0.0])
    np.testing.assert_allclose(xdot[2:], tau / np.array([2.0, 1.0]))


def test_time_derivatives_autodiff():
    plant = PlanarLinkage(stiffness=2.0, damping=0.0)
    seed = initialize_autodiff(np.array([0.0, 0.0, 0.0, 0.0, 0.0, 0.0]))
    xdot = plant.calc_time_derivatives(seed[:4], seed[4:5], seed[5:])

    np.testing.assert_allclose(autodiff_to_value(xdot), np.zeros(4))
    gradient = autodiff_to_gradient(xdot, 6)
    expected = np.array([
        [0.0, 0.0, 1.0, 0.0, 0.0, 0.0],
        [0.0, 0.0, 0.0, 1.0, 0.0, 0.0],
        [-2.0, 0.0, 0.0, 0.0, 1.0, 1.0],
        [0.0, -2.0, 0.0, 0.0, 0.0, -1.0],
    ])
    np.testing.assert_allclose(gradient, expected)


def test_autodiff_solve_propagates_derivatives():
    # d/dt of M^-1 b with M = diag(t, 1), b = [1, t] at t = 2
    t = initialize_autodiff(np.array([2.0]))[0]
    M = np.array([[t, 0.0], [0.0, 1.0]], dtype=object)
    b = np.array([1.0, t], dtype=object)
    y = autodiff_solve(M, b)

    np.testing.assert_allclose(autodiff_to_value(y), [0.5, 2.0])
    np.testing.assert_allclose(autodiff_to_gradient(y, 1), [[-0.25], [1.0]])
