"""Base classes for the topology optimization driver."""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Any, Optional, Tuple, Union
import numpy as np

from .config import OptimizerConfig, TopologyConfig
from .convergence import ConvergenceStatus, ConvergenceTest
from .exceptions import InvalidParameterError
from .history import OptimizationHistory
from ..parallel import Communicator, SerialCommunicator

logger = logging.getLogger(__name__)


class Topology:
    """Density bounds and initial value of the design field."""

    def __init__(self, bounds: Tuple[float, float] = (0.0, 1.0), initial_value: float = 0.5):
        min_density, max_density = float(bounds[0]), float(bounds[1])
        if not min_density < max_density:
            raise InvalidParameterError(
                f"Topology bounds must satisfy min < max, got ({min_density}, {max_density})"
            )
        if not min_density <= initial_value <= max_density:
            raise InvalidParameterError(
                f"Topology initial value {initial_value} lies outside bounds "
                f"({min_density}, {max_density})"
            )
        self._bounds = (min_density, max_density)
        self._initial_value = float(initial_value)

    @classmethod
    def from_config(cls, config: TopologyConfig) -> 'Topology':
        return cls((config.min_density, config.max_density), config.initial_value)

    def get_bounds(self) -> Tuple[float, float]:
        return self._bounds

    def get_initial_value(self) -> float:
        return self._initial_value


class SolverInterface(ABC):
    """Abstract base class for the simulation that drives the optimizer.

    Implementations evaluate the objective, the optional secondary constraint
    and the volume for a design vector local to the calling partition.
    Gradient arrays are passed in by the optimizer and filled in place.
    """

    @abstractmethod
    def get_num_opt_dofs(self) -> int:
        """Number of design variables on this partition."""
        pass

    @abstractmethod
    def initialize_topology(self, p: np.ndarray) -> None:
        """Receive the initial design vector."""
        pass

    @abstractmethod
    def compute_reference_volume(self) -> float:
        """Volume of the fully dense design, used to scale volume fractions."""
        pass

    @abstractmethod
    def compute_volume(self, p: np.ndarray, dvdp: Optional[np.ndarray] = None) -> float:
        """Compute the volume of design ``p``.

        Args:
            p: Design vector
            dvdp: Optional output array for the volume gradient

        Returns:
            Global volume of the design
        """
        pass

    @abstractmethod
    def compute(self, p: np.ndarray, dfdp: np.ndarray,
                dgdp: Optional[np.ndarray] = None) -> Tuple[float, float]:
        """Evaluate the objective and the secondary constraint.

        Args:
            p: Design vector
            dfdp: Output array for the objective gradient
            dgdp: Optional output array for the constraint gradient

        Returns:
            Tuple of (objective, constraint residual). The residual is 0.0 when
            the problem has no secondary constraint.
        """
        pass

    def compute_objective(self, p: np.ndarray, dfdp: np.ndarray) -> float:
        """Evaluate only the objective and its gradient."""
        f, _ = self.compute(p, dfdp)
        return f


@dataclass
class OptimizationResult:
    """Outcome of an optimizer run."""
    x: np.ndarray
    objective: float
    iterations: int
    status: ConvergenceStatus
    volume_fraction: float
    info: Dict[str, Any] = field(default_factory=dict)

    @property
    def success(self) -> bool:
        return self.status == ConvergenceStatus.CONVERGED

    def to_dict(self) -> Dict[str, Any]:
        return {
            'objective': self.objective,
            'iterations': self.iterations,
            'status': self.status.value,
            'volume_fraction': self.volume_fraction,
            'info': self.info,
        }


class Optimizer(ABC):
    """Abstract base class for optimization algorithms.

    Holds the state shared by every backend: the topology, the convergence
    checker, the bound solver interface and the communicator.
    """

    def __init__(self, config: OptimizerConfig, topology: Topology):
        if topology is None:
            raise InvalidParameterError("Error! Optimizer requires a valid Topology.")
        if config.convergence is None:
            raise InvalidParameterError(
                "Optimization convergence:  'Convergence Tests' ParameterList is required"
            )

        self.config = config
        self.topology = topology
        self.convergence_checker = ConvergenceTest(config.convergence)
        self.solver_interface: Optional[SolverInterface] = None
        self.comm: Communicator = SerialCommunicator()
        self.history = OptimizationHistory()

        self.num_opt_dofs = 0
        self.p: Optional[np.ndarray] = None
        self.p_last: Optional[np.ndarray] = None
        self.f = 0.0
        self.f_last = 0.0
        self.opt_volume = 0.0
        self.iterations = 0

    def set_interface(self, solver_interface: SolverInterface) -> None:
        """Bind the simulation the optimizer queries."""
        if not isinstance(solver_interface, SolverInterface):
            raise InvalidParameterError(
                f"Error! {type(solver_interface).__name__} is not a SolverInterface."
            )
        self.solver_interface = solver_interface

    def set_communicator(self, comm: Communicator) -> None:
        self.comm = comm

    def _require_interface(self) -> SolverInterface:
        if self.solver_interface is None:
            raise InvalidParameterError("Error! Optimizer requires valid Solver Interface")
        return self.solver_interface

    def _report(self, message: str) -> None:
        if self.comm.is_root():
            logger.info(message)

    @abstractmethod
    def initialize(self) -> None:
        """Allocate design storage and query the reference volume."""
        pass

    @abstractmethod
    def optimize(self) -> OptimizationResult:
        """Run the optimization loop to convergence or iteration exhaustion."""
        pass

    def compute_norm(self, vector: np.ndarray) -> float:
        """Global Euclidean norm of a partitioned vector (collective)."""
        local = float(np.dot(vector, vector))
        gnorm = self.comm.sum_all(local)
        return float(np.sqrt(gnorm)) if gnorm > 0.0 else 0.0

    def compute_diff_norm(self, a: np.ndarray, b: np.ndarray, print_result: bool = False) -> float:
        """Global Euclidean norm of ``a - b`` (collective)."""
        diff = a - b
        gnorm = self.comm.sum_all(float(np.dot(diff, diff)))
        gnorm = float(np.sqrt(gnorm)) if gnorm > 0.0 else 0.0
        if print_result:
            self._report(f"Optimizer:  computed diffnorm is: {gnorm}")
        return gnorm

    def save_history(self, filename: Union[str, Path]) -> None:
        """Save optimization history."""
        self.history.save(filename)
