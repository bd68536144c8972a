"""
topodrive - Topology Optimization Driver.

Gradient-based, volume-constrained topology optimization: an
optimality-criteria optimizer with a hybrid bisection/Newton volume
sub-solve, an NLopt (MMA, CCSA) backend, and composable convergence tests.
"""

__version__ = "0.1.0"

from topodrive.core import (
    InvalidParameterError, OptimizerConfig, ConvergenceTest, ConvergenceStatus,
    Optimizer, OptimizationResult, SolverInterface, Topology, OptimizerFactory,
)
# Registers the OC and NLopt backends with the factory
from topodrive.optimization import OCOptimizer, NLoptOptimizer
from topodrive.parallel import Communicator, SerialCommunicator, MPICommunicator

__all__ = [
    "InvalidParameterError", "OptimizerConfig", "ConvergenceTest", "ConvergenceStatus",
    "Optimizer", "OptimizationResult", "SolverInterface", "Topology", "OptimizerFactory",
    "OCOptimizer", "NLoptOptimizer",
    "Communicator", "SerialCommunicator", "MPICommunicator",
]
