"""Core optimization framework components."""

from .exceptions import InvalidParameterError
from .config import (
    OptimizerConfig, ConvergenceConfig, VolumeEnforcementConfig, TopologyConfig
)
from .convergence import ConvergenceTest, ConvergenceStatus, ComboType
from .history import OptimizationHistory, IterationRecord
from .base import Optimizer, OptimizationResult, SolverInterface, Topology
from .registry import OptimizerFactory, OptimizerRegistry, register_optimizer

__all__ = [
    'InvalidParameterError',
    'OptimizerConfig',
    'ConvergenceConfig',
    'VolumeEnforcementConfig',
    'TopologyConfig',
    'ConvergenceTest',
    'ConvergenceStatus',
    'ComboType',
    'OptimizationHistory',
    'IterationRecord',
    'Optimizer',
    'OptimizationResult',
    'SolverInterface',
    'Topology',
    'OptimizerFactory',
    'OptimizerRegistry',
    'register_optimizer',
]
