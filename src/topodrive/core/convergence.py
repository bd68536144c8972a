"""
Convergence Tests for Optimization Loops

Implements the stopping criteria evaluated at the end of every outer
iteration:
- Absolute and relative change of the design vector
- Absolute and relative change of the objective
- Running averages of the objective change over a bounded window
- AND/OR combination with minimum and maximum iteration guards
"""

import logging
from abc import ABC, abstractmethod
from collections import deque
from enum import Enum
from typing import Any, Deque, Dict, List, Mapping, Type

from .config import CRITERION_KEYS, ConvergenceConfig
from .exceptions import InvalidParameterError

logger = logging.getLogger(__name__)

RUNNING_WINDOW = 10

_RULE = "*" * 72


class ConvergenceStatus(Enum):
    """Outcome of the most recent convergence check."""
    NOT_CONVERGED = "not_converged"
    CONVERGED = "converged"
    ITERATION_LIMIT = "iteration_limit"


class ComboType(Enum):
    """How the results of individual criteria are combined."""
    AND = "and"
    OR = "or"

    @classmethod
    def from_string(cls, value: str) -> 'ComboType':
        try:
            return cls(value.strip().lower())
        except ValueError:
            raise InvalidParameterError(
                "Optimization convergence:  Unknown 'Combo Type'.  Options are ('AND', 'OR') "
            ) from None


class Criterion(ABC):
    """Abstract base class for a single stopping criterion."""

    label = ""

    def __init__(self, tolerance: float):
        self.tolerance = float(tolerance)

    def init_norm(self, f0: float, p0: float) -> None:
        """Seed baselines; absolute criteria ignore them."""
        pass

    @abstractmethod
    def passed(self, delta_f: float, delta_p: float, write: bool = False) -> bool:
        """Return True if the criterion is satisfied for these deltas."""
        pass

    def _log(self, detail: str, status: bool) -> None:
        logger.info(f"Test: {self.label}: ")
        logger.info(f"     {detail} < {self.tolerance}: {'true' if status else 'false'}")


class AbsoluteDesignChange(Criterion):
    label = "Topology Change (Absolute)"

    def passed(self, delta_f: float, delta_p: float, write: bool = False) -> bool:
        status = abs(delta_p) < self.tolerance
        if write:
            self._log(f"abs(dp) = {abs(delta_p)}", status)
        return status


class AbsoluteObjectiveChange(Criterion):
    label = "Objective Change (Absolute)"

    def passed(self, delta_f: float, delta_p: float, write: bool = False) -> bool:
        status = abs(delta_f) < self.tolerance
        if write:
            self._log(f"abs(df) = {abs(delta_f)}", status)
        return status


class RelativeDesignChange(Criterion):
    """Design change scaled by the norm of the initial design."""

    label = "Topology Change (Relative)"

    def __init__(self, tolerance: float):
        super().__init__(tolerance)
        self.p0 = 0.0

    def init_norm(self, f0: float, p0: float) -> None:
        self.p0 = p0

    def passed(self, delta_f: float, delta_p: float, write: bool = False) -> bool:
        if self.p0 == 0.0:
            status = False
            detail = f"abs(dp) = {abs(delta_p)}, p0 = 0"
        else:
            status = abs(delta_p / self.p0) < self.tolerance
            detail = f"abs(dp) = {abs(delta_p)}, fabs(dp/p0) = {abs(delta_p / self.p0)}"
        if write:
            self._log(detail, status)
        return status


class RelativeObjectiveChange(Criterion):
    """Objective change scaled by the initial objective."""

    label = "Objective Change (Relative)"

    def __init__(self, tolerance: float):
        super().__init__(tolerance)
        self.f0 = 0.0

    def init_norm(self, f0: float, p0: float) -> None:
        self.f0 = f0

    def passed(self, delta_f: float, delta_p: float, write: bool = False) -> bool:
        if self.f0 == 0.0:
            status = False
            detail = f"abs(df) = {abs(delta_f)}, f0 = 0"
        else:
            status = abs(delta_f / self.f0) < self.tolerance
            detail = f"abs(df) = {abs(delta_f)}, fabs(df/f0) = {abs(delta_f / self.f0)}"
        if write:
            self._log(detail, status)
        return status


class _RunningObjectiveChange(Criterion):
    """Tracks the mean objective change over the last RUNNING_WINDOW checks."""

    def __init__(self, tolerance: float, window: int = RUNNING_WINDOW):
        super().__init__(tolerance)
        self.samples: Deque[float] = deque(maxlen=window)

    def _push(self, delta_f: float) -> float:
        self.samples.append(delta_f)
        return self.running_average

    @property
    def running_average(self) -> float:
        if not self.samples:
            return 0.0
        return sum(self.samples) / len(self.samples)


class AbsoluteRunningObjectiveChange(_RunningObjectiveChange):
    label = "Objective Change Running Average (Absolute)"

    def passed(self, delta_f: float, delta_p: float, write: bool = False) -> bool:
        average = self._push(delta_f)
        # Magnitude of the windowed mean, not a signed running sum: a long
        # run of objective decreases must not pass on sign alone.
        status = abs(average) < self.tolerance
        if write:
            self._log(f"abs(<df>) = {abs(average)}", status)
        return status


class RelativeRunningObjectiveChange(_RunningObjectiveChange):
    label = "Objective Change Running Average (Relative)"

    def __init__(self, tolerance: float, window: int = RUNNING_WINDOW):
        super().__init__(tolerance, window)
        self.f0 = 0.0

    def init_norm(self, f0: float, p0: float) -> None:
        self.f0 = f0

    def passed(self, delta_f: float, delta_p: float, write: bool = False) -> bool:
        average = self._push(delta_f)
        if self.f0 == 0.0:
            status = False
            detail = f"abs(<df>) = {abs(average)}, f0 = 0"
        else:
            status = abs(average / self.f0) < self.tolerance
            detail = f"abs(<df>) = {abs(average)}, fabs(<df/f0>) = {abs(average / self.f0)}"
        if write:
            self._log(detail, status)
        return status


CRITERION_TYPES: Dict[str, Type[Criterion]] = {
    "relative_topology_change": RelativeDesignChange,
    "absolute_topology_change": AbsoluteDesignChange,
    "relative_objective_change": RelativeObjectiveChange,
    "absolute_objective_change": AbsoluteObjectiveChange,
    "relative_running_objective_change": RelativeRunningObjectiveChange,
    "absolute_running_objective_change": AbsoluteRunningObjectiveChange,
}


class ConvergenceTest:
    """
    Combined convergence test for an optimization run.

    Criteria absent from the configuration are not instantiated. ``init_norm``
    must be called once per run before the first ``is_converged`` call.
    """

    def __init__(self, config: ConvergenceConfig):
        self.config = config
        self.min_iterations = config.min_iterations
        self.max_iterations = config.max_iterations
        self.combo_type = ComboType.from_string(config.combo_type)

        self.criteria: List[Criterion] = []
        for _, attr in CRITERION_KEYS:
            tolerance = getattr(config, attr)
            if tolerance is not None:
                self.criteria.append(CRITERION_TYPES[attr](tolerance))

        self.status = ConvergenceStatus.NOT_CONVERGED
        self.last_results: List[bool] = []

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> 'ConvergenceTest':
        """Build from a 'Convergence Tests' parameter section."""
        return cls(ConvergenceConfig.from_dict(data))

    def init_norm(self, f0: float, p0: float) -> None:
        for criterion in self.criteria:
            criterion.init_norm(f0, p0)

    def is_converged(self, delta_f: float, delta_p: float, iteration: int, my_pid: int = 0) -> bool:
        """Evaluate all criteria for the deltas of ``iteration``.

        Args:
            delta_f: Global objective change over the iteration
            delta_p: Global norm of the design change over the iteration
            iteration: Zero-based iteration counter
            my_pid: Rank of the caller; only rank 0 writes status text

        Returns:
            True when the run should stop, either because the criteria passed
            or because the iteration limit was reached (see ``status``)
        """
        if iteration == 0:
            self.status = ConvergenceStatus.NOT_CONVERGED
            return False

        write = my_pid == 0

        if write:
            logger.info(_RULE)
            logger.info("** Optimization Convergence Check **************************************")

        results = [c.passed(delta_f, delta_p, write) for c in self.criteria]
        self.last_results = results

        if self.combo_type == ComboType.AND:
            converged = all(results)
        else:
            converged = any(results)

        if write:
            if converged:
                if iteration < self.min_iterations:
                    logger.info("Converged, but continuing because min iterations not reached.")
                else:
                    logger.info("Converged!")
            else:
                logger.info("Not converged.")
            logger.info(_RULE)

        if iteration < self.min_iterations:
            converged = False

        self.status = ConvergenceStatus.CONVERGED if converged else ConvergenceStatus.NOT_CONVERGED

        if iteration >= self.max_iterations and not converged:
            converged = True
            self.status = ConvergenceStatus.ITERATION_LIMIT
            if write:
                logger.warning("**********  Not converged.  Exiting due to iteration limit.  ***********")

        return converged
