"""Optimizer backends; importing this package registers them with the factory."""

from .oc_optimizer import OCOptimizer
from .nlopt_optimizer import NLoptOptimizer, StopToken

__all__ = [
    'OCOptimizer',
    'NLoptOptimizer',
    'StopToken',
]
