"""Registry and factory for optimizer packages."""

from typing import Any, Dict, List, Mapping, Type, Union

from .base import Optimizer, Topology
from .config import OptimizerConfig
from .exceptions import InvalidParameterError


class OptimizerRegistry:
    """Registry for optimizer backends, keyed by the 'Package' name."""

    _optimizers: Dict[str, Type[Optimizer]] = {}
    _descriptions: Dict[str, str] = {}

    @classmethod
    def register_optimizer(cls, package: str, optimizer_class: Type[Optimizer],
                           description: str = "") -> None:
        """Register an optimizer class for a package name."""
        cls._optimizers[package] = optimizer_class
        cls._descriptions[package] = description

    @classmethod
    def get_optimizer(cls, package: str) -> Type[Optimizer]:
        """Get optimizer class by package name."""
        if package not in cls._optimizers:
            options = "\n".join(
                f"\t {name} ... {desc}" for name, desc in cls._descriptions.items()
            )
            raise InvalidParameterError(
                f"Error!  Optimization package: {package} Unknown!\n"
                f"Valid options are\n{options}"
            )
        return cls._optimizers[package]

    @classmethod
    def list_available_packages(cls) -> List[str]:
        return list(cls._optimizers.keys())


def register_optimizer(package: str, description: str = ""):
    """Decorator to register optimizer backends."""
    def decorator(cls):
        OptimizerRegistry.register_optimizer(package, cls, description)
        cls.package = package
        return cls
    return decorator


class OptimizerFactory:
    """Builds the optimizer selected by the 'Package' parameter."""

    @staticmethod
    def create(config: Union[OptimizerConfig, Mapping[str, Any]], topology: Topology) -> Optimizer:
        """Construct an optimizer.

        Args:
            config: Optimizer configuration or an 'Optimizer' parameter mapping
            topology: Density bounds and initial value of the design field

        Returns:
            An optimizer ready for ``set_interface`` and ``initialize``

        Raises:
            InvalidParameterError: If the package is unknown or its parameters are invalid
        """
        if not isinstance(config, OptimizerConfig):
            config = OptimizerConfig.from_dict(config)
        optimizer_class = OptimizerRegistry.get_optimizer(config.package)
        return optimizer_class(config, topology)
