# pd_controller.py
#
# Joint-level PD controller for Cassie:
#
#   u_i = kp_i (q_des_i - q_i) + kd_i (v_des_i - v_i)
#
# with the state laid out as x = [q (num_joints); v (num_joints)].
#
# The controller receives a ControllerConfig and only reads fields after
# checking that it is the PD variant.
#
# Gains can be designed with continuous-time LQR on a unit-mass double
# integrator (design_pd_gains_from_lqr), then copied into a PDConfig.

from __future__ import annotations

from dataclasses import dataclass
from typing import ClassVar, Tuple, Union

import numpy as np
from pydrake.all import LinearQuadraticRegulator

# Same ordering as the state published by the Cassie LCM translators.
CASSIE_JOINT_NAMES = [
    "hip_roll_left",
    "hip_roll_right",
    "hip_yaw_left",
    "hip_yaw_right",
    "hip_pitch_left",
    "hip_pitch_right",
    "knee_left",
    "knee_right",
    "knee_joint_left",
    "knee_joint_right",
    "ankle_joint_left",
    "ankle_joint_right",
    "toe_left",
    "toe_right",
]


@dataclass(frozen=True)
class PDConfig:
    kind: ClassVar[str] = "pd"

    q_desired: np.ndarray
    v_desired: np.ndarray
    kp: np.ndarray
    kd: np.ndarray

    @classmethod
    def uniform(cls, num_joints: int, kp: float, kd: float) -> "PDConfig":
        return cls(
            q_desired=np.zeros(num_joints),
            v_desired=np.zeros(num_joints),
            kp=np.full(num_joints, float(kp)),
            kd=np.full(num_joints, float(kd)),
        )

    @property
    def num_joints(self) -> int:
        return np.asarray(self.q_desired).shape[0]


@dataclass(frozen=True)
class AffineConfig:
    """Gains of an affine law; not accepted by the PD controller."""

    kind: ClassVar[str] = "affine"

    K: np.ndarray
    E: np.ndarray
    x_desired: np.ndarray


ControllerConfig = Union[PDConfig, AffineConfig]


class PDController:
    def __init__(self, num_joints: int = len(CASSIE_JOINT_NAMES)) -> None:
        self.num_joints = int(num_joints)

    def _check_config(self, config: ControllerConfig) -> PDConfig:
        kind = getattr(config, "kind", None)
        if kind != PDConfig.kind or not isinstance(config, PDConfig):
            raise TypeError(f"PDController expects a '{PDConfig.kind}' config, got {kind!r}")
        for name in ("q_desired", "v_desired", "kp", "kd"):
            size = np.asarray(getattr(config, name)).reshape(-1).shape[0]
            if size != self.num_joints:
                raise ValueError(
                    f"PDConfig.{name} must have length {self.num_joints}, got {size}"
                )
        return config

    def calc_control(self, state: np.ndarray, config: ControllerConfig) -> np.ndarray:
        config = self._check_config(config)
        state = np.asarray(state, dtype=float).reshape(-1)
        if state.shape[0] != 2 * self.num_joints:
            raise ValueError(
                f"state must have length {2 * self.num_joints}, got {state.shape[0]}"
            )

        q = state[:self.num_joints]
        v = state[self.num_joints:]
        kp = np.asarray(config.kp, dtype=float).reshape(-1)
        kd = np.asarray(config.kd, dtype=float).reshape(-1)
        q_des = np.asarray(config.q_desired, dtype=float).reshape(-1)
        v_des = np.asarray(config.v_desired, dtype=float).reshape(-1)

        # PD torque: τ = Kp (q* - q) + Kd (v* - v)
        return kp * (q_des - q) + kd * (v_des - v)


def design_pd_gains_from_lqr(
    q_weight: float = 100.0,
    v_weight: float = 10.0,
    torque_weight: float = 1.0,
) -> Tuple[float, float]:
    """
    Design scalar PD gains (Kp, Kd) via continuous-time LQR on a
    unit-mass double integrator:

        x = [position_error; velocity_error]
        xdot = A x + B u,   A = [[0, 1], [0, 0]],  B = [[0], [1]]

    with Q = diag(q_weight, v_weight) and R = [torque_weight].

    Returns:
        Kp, Kd such that u = -K x equals u = -Kp * e_q - Kd * e_v.
    """
    A = np.array([[0.0, 1.0],
                  [0.0, 0.0]])
    B = np.array([[0.0],
                  [1.0]])

    Q = np.diag([q_weight, v_weight])
    R = np.array([[torque_weight]])

    K, _ = LinearQuadraticRegulator(A, B, Q, R)

    Kp = float(K[0, 0])
    Kd = float(K[0, 1])
    return Kp, Kd


def make_lqr_pd_config(
    num_joints: int = len(CASSIE_JOINT_NAMES),
    q_weight: float = 100.0,
    v_weight: float = 10.0,
    torque_weight: float = 1.0,
    verbose: bool = False,
) -> PDConfig:
    Kp, Kd = design_pd_gains_from_lqr(q_weight, v_weight, torque_weight)
    if verbose:
        print(
            f"[PD] LQR-designed gains for {num_joints} joints: "
            f"Kp = {Kp:.3f}, Kd = {Kd:.3f}"
        )
    return PDConfig.uniform(num_joints, Kp, Kd)
