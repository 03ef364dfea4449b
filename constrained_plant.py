# constrained_plant.py
#
# Models consumed by the constrained LQR controller.
#
# A ConstrainedPlant exposes the three things the controller needs from the
# kinematics/dynamics side:
#   - the holonomic position-constraint Jacobian J_h(q)          (double only)
#   - the contact-point Jacobian J_c(x), 3 rows per contact point (double or AutoDiffXd)
#   - the constrained time derivatives
#         xdot = f(x, u, lambda),   lambda = [lambda_h; lambda_c]
#     with
#         qdot = v
#         M vdot = B u + tau_bias(q, v) + J_h^T lambda_h + J_c^T lambda_c
#     evaluated for double or AutoDiffXd scalars.
#
# PlanarLinkage is a self-contained planar walker model with constant mass
# matrix, joint springs/dampers and fixed contact geometry. It needs no
# MultibodyPlant and is what the CLI and most tests use.

from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional, Tuple

import numpy as np


@dataclass
class ContactInfo:
    """Contact points as (frame name, point in that frame)."""

    frame_names: List[str] = field(default_factory=list)
    points: List[np.ndarray] = field(default_factory=list)

    def __post_init__(self) -> None:
        if len(self.frame_names) != len(self.points):
            raise ValueError(
                f"ContactInfo has {len(self.frame_names)} frames but "
                f"{len(self.points)} points"
            )
        self.points = [np.asarray(p, dtype=float).reshape(3) for p in self.points]

    @property
    def num_contacts(self) -> int:
        return len(self.frame_names)

    def items(self) -> List[Tuple[str, np.ndarray]]:
        return list(zip(self.frame_names, self.points))


class ConstrainedPlant:
    """Interface of the kinematics/dynamics collaborator."""

    def num_positions(self) -> int:
        raise NotImplementedError

    def num_velocities(self) -> int:
        raise NotImplementedError

    def num_actuators(self) -> int:
        raise NotImplementedError

    def num_position_constraints(self) -> int:
        raise NotImplementedError

    def num_contacts(self) -> int:
        return 0

    def num_states(self) -> int:
        return self.num_positions() + self.num_velocities()

    def num_forces(self) -> int:
        return self.num_position_constraints() + 3 * self.num_contacts()

    def calc_position_constraints_jacobian(self, q: np.ndarray) -> np.ndarray:
        raise NotImplementedError

    def calc_contact_jacobian(self, x: np.ndarray) -> np.ndarray:
        raise NotImplementedError

    def calc_time_derivatives(
        self, x: np.ndarray, u: np.ndarray, lambda_: np.ndarray
    ) -> np.ndarray:
        raise NotImplementedError


class PlanarLinkage(ConstrainedPlant):
    """
    Planar linkage with linear joint springs and dampers:

        M vdot = B u - K_s q - D v + tau_bias + J_h^T lambda_h + J_c^T lambda_c

    All matrices are constant, so the model is its own linearization; this
    makes it handy for checking the projection algebra in closed form.

    The default (two links, one actuator on the first joint, constraint
    q_0 - q_1 = 0) is the simplified planar walker used throughout.
    """

    def __init__(
        self,
        masses=(1.0, 1.0),
        stiffness: float | np.ndarray = 0.0,
        damping: float | np.ndarray = 0.1,
        actuation_matrix: Optional[np.ndarray] = None,
        position_constraints_jacobian: Optional[np.ndarray] = None,
        contact_jacobian: Optional[np.ndarray] = None,
        bias: Optional[np.ndarray] = None,
    ) -> None:
        masses = np.asarray(masses, dtype=float).reshape(-1)
        n = masses.shape[0]
        self._n = n

        self.mass_matrix = np.diag(masses)
        self._mass_matrix_inv = np.diag(1.0 / masses)
        self.stiffness_matrix = self._as_joint_matrix(stiffness, "stiffness")
        self.damping_matrix = self._as_joint_matrix(damping, "damping")

        if actuation_matrix is None:
            actuation_matrix = np.zeros((n, 1))
            actuation_matrix[0, 0] = 1.0
        self.actuation_matrix = np.asarray(actuation_matrix, dtype=float)
        if self.actuation_matrix.ndim != 2 or self.actuation_matrix.shape[0] != n:
            raise ValueError(
                f"actuation_matrix must have {n} rows, got shape "
                f"{self.actuation_matrix.shape}"
            )

        if position_constraints_jacobian is None:
            position_constraints_jacobian = np.zeros((1, n))
            position_constraints_jacobian[0, 0] = 1.0
            position_constraints_jacobian[0, 1] = -1.0
        self.J_h = np.asarray(position_constraints_jacobian, dtype=float).reshape(-1, n)

        if contact_jacobian is None:
            contact_jacobian = np.zeros((0, n))
        self.J_c = np.asarray(contact_jacobian, dtype=float).reshape(-1, n)
        if self.J_c.shape[0] % 3 != 0:
            raise ValueError(
                "contact_jacobian must have 3 rows per contact point, got "
                f"{self.J_c.shape[0]}"
            )

        self.bias = np.zeros(n) if bias is None else np.asarray(bias, dtype=float).reshape(n)

    def _as_joint_matrix(self, value, name: str) -> np.ndarray:
        value = np.asarray(value, dtype=float)
        if value.ndim == 0:
            return float(value) * np.eye(self._n)
        if value.ndim == 1:
            return np.diag(value.reshape(self._n))
        if value.shape != (self._n, self._n):
            raise ValueError(f"{name} must be scalar, ({self._n},) or ({self._n}, {self._n})")
        return value

    def num_positions(self) -> int:
        return self._n

    def num_velocities(self) -> int:
        return self._n

    def num_actuators(self) -> int:
        return self.actuation_matrix.shape[1]

    def num_position_constraints(self) -> int:
        return self.J_h.shape[0]

    def num_contacts(self) -> int:
        return self.J_c.shape[0] // 3

    def calc_position_constraints_jacobian(self, q: np.ndarray) -> np.ndarray:
        assert np.asarray(q).shape[0] == self._n
        return self.J_h.copy()

    def calc_contact_jacobian(self, x: np.ndarray) -> np.ndarray:
        assert np.asarray(x).shape[0] == self.num_states()
        return self.J_c.copy()

    def calc_time_derivatives(self, x, u, lambda_):
        n = self._n
        x = np.asarray(x).reshape(-1)
        u = np.asarray(u).reshape(-1)
        lambda_ = np.asarray(lambda_).reshape(-1)
        assert x.shape[0] == 2 * n
        assert u.shape[0] == self.num_actuators()
        assert lambda_.shape[0] == self.num_forces()

        q = x[:n]
        v = x[n:]
        n_h = self.num_position_constraints()
        lambda_h = lambda_[:n_h]
        lambda_c = lambda_[n_h:]

        tau = (
            self.actuation_matrix @ u
            - self.stiffness_matrix @ q
            - self.damping_matrix @ v
            + self.bias
        )
        if n_h > 0:
            tau = tau + self.J_h.T @ lambda_h
        if self.num_contacts() > 0:
            tau = tau + self.J_c.T @ lambda_c

        vdot = self._mass_matrix_inv @ tau
        return np.concatenate([v, vdot])
