# multibody_constrained_plant.py
#
# Contact toolkit on top of a pydrake MultibodyPlant.
#
# Given a finalized continuous-time plant, a set of contact points and an
# optional holonomic constraint Jacobian (e.g. Cassie's four-bar loops, which
# MultibodyPlant does not model as joints), this evaluates
#
#     qdot = N(q) v
#     M(q) vdot = B u + tau_g(q) - C(q, v) v + J_h(q)^T lambda_h + J_c(q)^T lambda_c
#
# for double and AutoDiffXd scalars. The AutoDiffXd plant is created once with
# plant.ToAutoDiffXd(), the same way the gait optimization builds its ad_plant.

from __future__ import annotations

from typing import Callable, Optional

import numpy as np

from pydrake.all import (
    JacobianWrtVariable,
    MultibodyPlant,
)

from autodiff_utils import (
    autodiff_array_equal,
    autodiff_solve,
    autodiff_to_value,
    is_autodiff,
    to_autodiff,
)
from constrained_plant import ConstrainedPlant, ContactInfo


class MultibodyConstrainedPlant(ConstrainedPlant):
    def __init__(
        self,
        plant: MultibodyPlant,
        contact_info: Optional[ContactInfo] = None,
        position_constraints_jacobian: Optional[Callable] = None,
        num_position_constraints: int = 0,
    ) -> None:
        """
        Args:
            plant: finalized MultibodyPlant<double> with time_step == 0.
            contact_info: contact points (frame name, point in frame).
            position_constraints_jacobian: callable q -> (num_position_constraints, nq)
                written with numpy operations so that it accepts AutoDiffXd q.
            num_position_constraints: rows returned by the callable.
        """
        assert plant.is_finalized(), "Call plant.Finalize() first."
        if plant.time_step() != 0.0:
            raise ValueError("MultibodyConstrainedPlant needs a continuous plant (time_step=0)")
        if num_position_constraints > 0 and position_constraints_jacobian is None:
            raise ValueError("num_position_constraints > 0 needs position_constraints_jacobian")

        self._plant = plant
        self._ad_plant = plant.ToAutoDiffXd()
        self._context = plant.CreateDefaultContext()
        self._ad_context = self._ad_plant.CreateDefaultContext()

        self._contact_info = contact_info if contact_info is not None else ContactInfo()
        self._contact_frames = [
            plant.GetFrameByName(name) for name in self._contact_info.frame_names
        ]
        self._ad_contact_frames = [
            self._ad_plant.GetFrameByName(name) for name in self._contact_info.frame_names
        ]

        self._position_constraints_jacobian = position_constraints_jacobian
        self._num_position_constraints = int(num_position_constraints)

        # B is constant for a MultibodyPlant.
        self._actuation_matrix = plant.MakeActuationMatrix()

    @property
    def plant(self) -> MultibodyPlant:
        return self._plant

    @property
    def contact_info(self) -> ContactInfo:
        return self._contact_info

    def num_positions(self) -> int:
        return self._plant.num_positions()

    def num_velocities(self) -> int:
        return self._plant.num_velocities()

    def num_actuators(self) -> int:
        return self._plant.num_actuators()

    def num_position_constraints(self) -> int:
        return self._num_position_constraints

    def num_contacts(self) -> int:
        return self._contact_info.num_contacts

    def _select(self, x: np.ndarray):
        if is_autodiff(x):
            return self._ad_plant, self._ad_context, self._ad_contact_frames
        return self._plant, self._context, self._contact_frames

    def _set_state(self, plant, context, x: np.ndarray) -> None:
        nq = self.num_positions()
        q = x[:nq]
        v = x[nq:]
        # Skip redundant writes to keep the context caches warm.
        if not autodiff_array_equal(q, plant.GetPositions(context)):
            plant.SetPositions(context, q)
        if not autodiff_array_equal(v, plant.GetVelocities(context)):
            plant.SetVelocities(context, v)

    def _promote_state(self, x: np.ndarray) -> np.ndarray:
        # The AutoDiffXd plant refuses float arrays; the float plant refuses
        # object arrays.
        x = np.asarray(x).reshape(-1)
        if x.dtype == object and not is_autodiff(x):
            return x.astype(float)
        return x

    def calc_position_constraints_jacobian(self, q: np.ndarray) -> np.ndarray:
        nq = self.num_positions()
        if self._num_position_constraints == 0:
            return np.zeros((0, nq))
        J_h = np.asarray(self._position_constraints_jacobian(q))
        J_h = autodiff_to_value(J_h) if not is_autodiff(q) else J_h
        assert J_h.shape == (self._num_position_constraints, nq), (
            f"Position constraint Jacobian has shape {J_h.shape}, expected "
            f"({self._num_position_constraints}, {nq})"
        )
        return J_h

    def calc_contact_jacobian(self, x: np.ndarray) -> np.ndarray:
        """Stacked translational Jacobians of the contact points in world, (3 * nc, nv)."""
        x = self._promote_state(x)
        assert x.shape[0] == self.num_states()
        plant, context, frames = self._select(x)
        self._set_state(plant, context, x)

        autodiff = is_autodiff(x)
        blocks = []
        for frame, (_, p_BoBi_B) in zip(frames, self._contact_info.items()):
            if autodiff:
                p_BoBi_B = to_autodiff(p_BoBi_B)
            J_WB = plant.CalcJacobianTranslationalVelocity(
                context,
                JacobianWrtVariable.kV,
                frame,
                p_BoBi_B,
                plant.world_frame(),
                plant.world_frame(),
            )
            blocks.append(np.asarray(J_WB).reshape(3, -1))

        if not blocks:
            return np.zeros((0, self.num_velocities()))
        return np.vstack(blocks)

    def calc_time_derivatives(self, x, u, lambda_):
        x = self._promote_state(x)
        u = np.asarray(u).reshape(-1)
        lambda_ = np.asarray(lambda_).reshape(-1)
        assert x.shape[0] == self.num_states()
        assert u.shape[0] == self.num_actuators()
        assert lambda_.shape[0] == self.num_forces()

        plant, context, _ = self._select(x)
        self._set_state(plant, context, x)

        nq = self.num_positions()
        q = x[:nq]
        v = x[nq:]

        M = plant.CalcMassMatrix(context)
        Cv = plant.CalcBiasTerm(context)
        tau_g = plant.CalcGravityGeneralizedForces(context)

        tau = self._actuation_matrix @ u + tau_g - Cv

        n_h = self._num_position_constraints
        if n_h > 0:
            J_h = self.calc_position_constraints_jacobian(q)
            tau = tau + J_h.T @ lambda_[:n_h]
        if self.num_contacts() > 0:
            J_c = self.calc_contact_jacobian(x)
            tau = tau + J_c.T @ lambda_[n_h:]

        vdot = autodiff_solve(M, tau)
        qdot = plant.MapVelocityToQDot(context, v)
        return np.concatenate([np.asarray(qdot).reshape(-1), np.asarray(vdot).reshape(-1)])
