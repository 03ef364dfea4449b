# tests/test_multibody_constrained_plant.py
#
# A point foot on two prismatic joints (x, then z) with one contact point.

from __future__ import annotations

import numpy as np
import pytest

from pydrake.all import MultibodyPlant, Parser

from autodiff_utils import autodiff_to_gradient, autodiff_to_value, initialize_autodiff
from constrained_lqr_controller import (
    ConstrainedLqrController,
    EquilibriumError,
    linearize_constrained_dynamics,
    solve_constrained_equilibrium,
)
from constrained_plant import ContactInfo
from multibody_constrained_plant import MultibodyConstrainedPlant

SLIDER_URDF = """<?xml version="1.0"?>
<robot name="slider">
  <link name="carriage">
    <inertial>
      <mass value="1.0"/>
      <inertia ixx="0.01" ixy="0" ixz="0" iyy="0.01" iyz="0" izz="0.01"/>
    </inertial>
  </link>
  <link name="foot">
    <inertial>
      <mass value="1.0"/>
      <inertia ixx="0.01" ixy="0" ixz="0" iyy="0.01" iyz="0" izz="0.01"/>
    </inertial>
  </link>
  <joint name="x" type="prismatic">
    <parent link="world"/>
    <child link="carriage"/>
    <axis xyz="1 0 0"/>
  </joint>
  <joint name="z" type="prismatic">
    <parent link="carriage"/>
    <child link="foot"/>
    <axis xyz="0 0 1"/>
  </joint>
</robot>
"""


def build_slider():
    plant = MultibodyPlant(time_step=0.0)
    Parser(plant).AddModelsFromString(SLIDER_URDF, "urdf")
    plant.AddJointActuator("x_motor", plant.GetJointByName("x"))
    plant.Finalize()

    contact_info = ContactInfo(frame_names=["foot"], points=[np.zeros(3)])
    return plant, MultibodyConstrainedPlant(plant, contact_info)


def _indices(plant):
    ix = plant.GetJointByName("x").position_start()
    iz = plant.GetJointByName("z").position_start()
    return ix, iz


def _gravity(plant) -> float:
    return -float(plant.gravity_field().gravity_vector()[2])


def test_sizes():
    plant, model = build_slider()
    assert model.num_positions() == 2
    assert model.num_velocities() == 2
    assert model.num_actuators() == 1
    assert model.num_contacts() == 1
    assert model.num_forces() == 3


def test_contact_jacobian_double_and_autodiff_agree():
    plant, model = build_slider()
    ix, iz = _indices(plant)
    x = np.array([0.3, -0.1, 0.0, 0.0])

    J = model.calc_contact_jacobian(x)
    expected = np.zeros((3, 2))
    expected[0, ix] = 1.0
    expected[2, iz] = 1.0
    np.testing.assert_allclose(J, expected, atol=1e-12)

    J_ad = autodiff_to_value(model.calc_contact_jacobian(initialize_autodiff(x)))
    np.testing.assert_allclose(J_ad, expected, atol=1e-12)


def test_supporting_contact_force_is_an_equilibrium():
    plant, model = build_slider()
    g = _gravity(plant)

    xdot = model.calc_time_derivatives(np.zeros(4), np.zeros(1), np.array([0.0, 0.0, g]))
    np.testing.assert_allclose(xdot, np.zeros(4), atol=1e-9)

    # Without the contact force the foot falls.
    xdot = model.calc_time_derivatives(np.zeros(4), np.zeros(1), np.zeros(3))
    ix, iz = _indices(plant)
    np.testing.assert_allclose(xdot[2 + iz], -g, atol=1e-9)


def test_linearization_of_slider():
    plant, model = build_slider()
    g = _gravity(plant)
    ix, iz = _indices(plant)

    lin = linearize_constrained_dynamics(
        model, np.zeros(4), np.zeros(1), np.array([0.0, 0.0, g])
    )
    np.testing.assert_allclose(lin.A[:2, 2:], np.eye(2), atol=1e-12)
    np.testing.assert_allclose(lin.A[2:, :], 0.0, atol=1e-9)

    # Both bodies ride on the x joint.
    assert lin.B.shape == (4, 1)
    assert lin.B[2 + ix, 0] == pytest.approx(0.5)
    assert lin.B[2 + iz, 0] == pytest.approx(0.0, abs=1e-12)


def test_autodiff_gradient_matches_finite_differences():
    plant, model = build_slider()
    g = _gravity(plant)
    x0 = np.array([0.1, 0.2, 0.3, -0.4])
    u0 = np.array([0.7])
    lambda0 = np.array([0.5, 0.0, g])

    seed = initialize_autodiff(np.concatenate([x0, u0, lambda0]))
    xdot = model.calc_time_derivatives(seed[:4], seed[4:5], seed[5:])
    gradient = autodiff_to_gradient(xdot, 8)

    eps = 1e-6
    base = np.concatenate([x0, u0, lambda0])
    f0 = model.calc_time_derivatives(x0, u0, lambda0)
    for j in range(8):
        pert = base.copy()
        pert[j] += eps
        f1 = model.calc_time_derivatives(pert[:4], pert[4:5], pert[5:])
        np.testing.assert_allclose(gradient[:, j], (f1 - f0) / eps, atol=1e-4)


def test_setup_around_falling_state_fails():
    _, model = build_slider()
    controller = ConstrainedLqrController(model)
    with pytest.raises(EquilibriumError):
        controller.setup_controller(np.zeros(2), np.zeros(1), np.zeros(3), np.eye(2), np.eye(1))


def test_solve_equilibrium_finds_supporting_force():
    plant, model = build_slider()
    g = _gravity(plant)

    u0, lambda0, xdot = solve_constrained_equilibrium(model, np.zeros(2))
    assert np.max(np.abs(xdot)) < 1e-6
    assert lambda0[2] == pytest.approx(g, abs=1e-6)
    # Horizontal balance only fixes u0 + lambda_x.
    assert u0[0] + lambda0[0] == pytest.approx(0.0, abs=1e-6)


def test_continuous_plant_required():
    plant = MultibodyPlant(time_step=1e-3)
    Parser(plant).AddModelsFromString(SLIDER_URDF, "urdf")
    plant.Finalize()
    with pytest.raises(ValueError, match="continuous"):
        MultibodyConstrainedPlant(plant)
