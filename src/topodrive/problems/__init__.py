"""Analytic reference problems implementing the SolverInterface.

These problems stand in for a finite-element simulation in the command-line
demo and the test suite. They are separable, so objective, volume and their
sensitivities are exact and cheap to evaluate.
"""

from typing import Optional, Tuple

import numpy as np

from ..core.base import SolverInterface
from ..parallel import Communicator, SerialCommunicator

__all__ = ['SeparableComplianceProblem']


class SeparableComplianceProblem(SolverInterface):
    """
    Compliance-like objective ``f = sum(w_i / p_i)`` with volume ``sum(v_i * p_i)``.

    The objective decreases monotonically in every density, so the optimum
    sits on the volume constraint with ``p_i`` proportional to
    ``sqrt(w_i / v_i)`` before clipping to the density bounds.

    If ``constraint_target`` is given, the problem also reports the secondary
    constraint residual ``g = volume_fraction - constraint_target`` and its
    adjoint gradient.

    With a partitioned communicator, each process holds its own slice of
    ``weights`` and ``volumes``; the objective is local, while volume and
    the constraint residual are global.
    """

    def __init__(self, weights: np.ndarray, volumes: Optional[np.ndarray] = None,
                 constraint_target: Optional[float] = None,
                 comm: Optional[Communicator] = None):
        self.weights = np.asarray(weights, dtype=float)
        if volumes is None:
            volumes = np.ones_like(self.weights)
        self.volumes = np.asarray(volumes, dtype=float)
        if self.weights.shape != self.volumes.shape:
            raise ValueError("weights and volumes must have the same shape")

        self.constraint_target = constraint_target
        self.comm = comm if comm is not None else SerialCommunicator()
        self.initial_topology: Optional[np.ndarray] = None
        self.num_evaluations = 0

    @classmethod
    def uniform_grid(cls, num_dofs: int, constraint_target: Optional[float] = None,
                     comm: Optional[Communicator] = None) -> 'SeparableComplianceProblem':
        """Deterministic problem with unit volumes and smoothly varying weights."""
        weights = 1.0 + 0.5 * np.sin(np.linspace(0.0, np.pi, num_dofs))
        return cls(weights, np.ones(num_dofs), constraint_target, comm)

    def get_num_opt_dofs(self) -> int:
        return int(self.weights.size)

    def initialize_topology(self, p: np.ndarray) -> None:
        self.initial_topology = np.array(p, copy=True)

    def compute_reference_volume(self) -> float:
        return float(self.comm.sum_all(float(np.sum(self.volumes))))

    def compute_volume(self, p: np.ndarray, dvdp: Optional[np.ndarray] = None) -> float:
        if dvdp is not None:
            dvdp[:] = self.volumes
        return float(self.comm.sum_all(float(np.dot(self.volumes, p))))

    def compute(self, p: np.ndarray, dfdp: np.ndarray,
                dgdp: Optional[np.ndarray] = None) -> Tuple[float, float]:
        self.num_evaluations += 1
        p = np.asarray(p)
        f = float(np.sum(self.weights / p))
        dfdp[:] = -self.weights / p ** 2

        if self.constraint_target is None:
            if dgdp is not None:
                dgdp[:] = 0.0
            return f, 0.0

        reference = self.compute_reference_volume()
        g = self.compute_volume(p) / reference - self.constraint_target
        if dgdp is not None:
            dgdp[:] = self.volumes / reference
        return f, g

    def optimal_design(self, volume_fraction: float,
                       bounds: Tuple[float, float] = (0.0, 1.0)) -> np.ndarray:
        """Serial closed-form optimum for a volume fraction, for checking results.

        Solves ``p_i = clip(sqrt(w_i / (lam * v_i)))`` for the multiplier
        ``lam`` that meets the volume target, by bisection on ``lam``.
        """
        target = volume_fraction * float(np.sum(self.volumes))
        shape = np.sqrt(self.weights / self.volumes)
        if target > bounds[1] * float(np.sum(self.volumes)):
            raise ValueError(f"Volume fraction {volume_fraction} is not reachable within {bounds}")

        lo, hi = 0.0, float(np.max(shape))
        # scale s = 1/sqrt(lam); volume increases with s
        while np.dot(self.volumes, np.clip(hi * shape, *bounds)) < target:
            hi *= 2.0
        for _ in range(200):
            mid = 0.5 * (lo + hi)
            if np.dot(self.volumes, np.clip(mid * shape, *bounds)) < target:
                lo = mid
            else:
                hi = mid
        return np.clip(0.5 * (lo + hi) * shape, *bounds)
