# affine_params.py
#
# Affine control law u = E + K (x_desired - x) and its wiring into a Drake
# diagram.
#
#   AffineParams            immutable record (K, E, x_desired, timestamp)
#   AffineParamsSource      LeafSystem emitting a controller's params each tick
#   AffineControllerSystem  LeafSystem turning (x, params) into u
#   build_affine_control_system
#                           stateless AffineSystem with the same law, for
#                           diagrams where the params never change
#
# The flat vector layout used on ports is
#   [K (row-major, n_u x n_x); E (n_u); x_desired (n_x); timestamp]

from __future__ import annotations

from dataclasses import dataclass

import numpy as np

from pydrake.all import (
    AffineSystem,
    BasicVector,
    LeafSystem,
)


def affine_params_size(num_states: int, num_efforts: int) -> int:
    return num_efforts * num_states + num_efforts + num_states + 1


@dataclass(frozen=True)
class AffineParams:
    K: np.ndarray
    E: np.ndarray
    x_desired: np.ndarray
    timestamp: float = 0.0

    @property
    def num_states(self) -> int:
        return self.x_desired.shape[0]

    @property
    def num_efforts(self) -> int:
        return self.E.shape[0]

    def calc_effort(self, x: np.ndarray) -> np.ndarray:
        x = np.asarray(x, dtype=float).reshape(-1)
        if x.shape[0] != self.num_states:
            raise ValueError(f"x must have length {self.num_states}, got {x.shape[0]}")
        return self.E + self.K @ (self.x_desired - x)

    def to_vector(self) -> np.ndarray:
        return np.concatenate([
            np.asarray(self.K, dtype=float).reshape(-1),
            np.asarray(self.E, dtype=float).reshape(-1),
            np.asarray(self.x_desired, dtype=float).reshape(-1),
            [float(self.timestamp)],
        ])

    @classmethod
    def from_vector(cls, vec: np.ndarray, num_states: int, num_efforts: int) -> "AffineParams":
        vec = np.asarray(vec, dtype=float).reshape(-1)
        expected = affine_params_size(num_states, num_efforts)
        if vec.shape[0] != expected:
            raise ValueError(
                f"AffineParams vector for n_x={num_states}, n_u={num_efforts} must have "
                f"length {expected}, got {vec.shape[0]}"
            )
        n_K = num_efforts * num_states
        K = vec[:n_K].reshape(num_efforts, num_states)
        E = vec[n_K:n_K + num_efforts]
        x_desired = vec[n_K + num_efforts:n_K + num_efforts + num_states]
        return cls(K=K, E=E, x_desired=x_desired, timestamp=float(vec[-1]))


class AffineParamsSource(LeafSystem):
    """Output port "affine_params" = controller.calc_control(t).to_vector()."""

    def __init__(self, controller) -> None:
        LeafSystem.__init__(self)
        assert controller.is_setup, "Call setup_controller() first."
        self._controller = controller
        size = affine_params_size(controller.num_states, controller.num_efforts)
        self.output_port_params_index = self.DeclareVectorOutputPort(
            "affine_params", BasicVector(size), self.CalcParams
        ).get_index()

    def CalcParams(self, context, output) -> None:
        params = self._controller.calc_control(context.get_time())
        output.SetFromVector(params.to_vector())


class AffineControllerSystem(LeafSystem):
    """Inputs "x" and "affine_params", output "u" = E + K (x_desired - x)."""

    def __init__(self, num_states: int, num_efforts: int) -> None:
        LeafSystem.__init__(self)
        self.num_states = int(num_states)
        self.num_efforts = int(num_efforts)

        self.state_input_port_index = self.DeclareVectorInputPort(
            "x", BasicVector(self.num_states)
        ).get_index()
        self.params_input_port_index = self.DeclareVectorInputPort(
            "affine_params", BasicVector(affine_params_size(self.num_states, self.num_efforts))
        ).get_index()
        self.DeclareVectorOutputPort("u", BasicVector(self.num_efforts), self.CalcControl)

    def CalcControl(self, context, output) -> None:
        x = self.get_input_port(self.state_input_port_index).Eval(context)
        vec = self.get_input_port(self.params_input_port_index).Eval(context)
        params = AffineParams.from_vector(vec, self.num_states, self.num_efforts)
        output.SetFromVector(params.calc_effort(x))


def build_affine_control_system(params: AffineParams) -> AffineSystem:
    # u = E - K (x - x_desired) as a feedthrough-only AffineSystem
    K = np.asarray(params.K, dtype=float)
    n_u, n_x = K.shape
    return AffineSystem(
        A=np.zeros((0, 0)),
        B=np.zeros((0, n_x)),
        f0=np.zeros((0,)),
        C=np.zeros((n_u, 0)),
        D=-K,
        y0=np.asarray(params.E, dtype=float) + K @ np.asarray(params.x_desired, dtype=float),
    )
