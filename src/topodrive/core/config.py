"""Configuration management for topology optimization runs.

Parameter files use the same key names as the optimizer input decks, e.g.::

    Optimizer:
      Package: OC
      Move Limiter: 0.2
      Stabilization Parameter: 0.5
      Volume Enforcement:
        Convergence Tolerance: 1.0e-6
        Target Volume Fraction: 0.4
        Maximum Iterations: 50
      Convergence Tests:
        Maximum Iterations: 100
        Combo Type: OR
        Relative Objective Change: 1.0e-4
    Topology:
      Bounds: [0.01, 1.0]
      Initial Value: 0.5
"""

import json
from pathlib import Path
from typing import Dict, List, Any, Optional, Tuple, Union, Mapping
from dataclasses import dataclass, field

import yaml

from .exceptions import InvalidParameterError


def _require(section: Mapping[str, Any], key: str, section_name: str) -> Any:
    """Return ``section[key]`` or raise a descriptive configuration error."""
    if key not in section:
        raise InvalidParameterError(
            f"{section_name}: '{key}' parameter is required."
        )
    return section[key]


def _require_section(data: Mapping[str, Any], key: str) -> Mapping[str, Any]:
    value = data.get(key)
    if not isinstance(value, Mapping):
        raise InvalidParameterError(f"Error! Missing '{key}' ParameterList.")
    return value


def _optional_float(section: Mapping[str, Any], key: str) -> Optional[float]:
    return float(section[key]) if key in section else None


# Convergence Tests keys, in the order the criteria are instantiated
CRITERION_KEYS: List[Tuple[str, str]] = [
    ("Relative Topology Change", "relative_topology_change"),
    ("Absolute Topology Change", "absolute_topology_change"),
    ("Relative Objective Change", "relative_objective_change"),
    ("Absolute Objective Change", "absolute_objective_change"),
    ("Relative Objective Running Average Change", "relative_running_objective_change"),
    ("Absolute Objective Running Average Change", "absolute_running_objective_change"),
]


@dataclass
class ConvergenceConfig:
    """Configuration for the optimization convergence tests.

    Attributes:
        max_iterations: Iteration count at which the run stops unconditionally
        min_iterations: Iterations that must elapse before convergence is accepted
        combo_type: How criteria combine, 'AND' or 'OR'
        relative_topology_change: Threshold on |dp/p0|, or None if unused
        absolute_topology_change: Threshold on |dp|, or None if unused
        relative_objective_change: Threshold on |df/f0|, or None if unused
        absolute_objective_change: Threshold on |df|, or None if unused
        relative_running_objective_change: Threshold on |<df>/f0|, or None if unused
        absolute_running_objective_change: Threshold on |<df>|, or None if unused
    """

    max_iterations: int
    min_iterations: int = 0
    combo_type: str = "OR"
    relative_topology_change: Optional[float] = None
    absolute_topology_change: Optional[float] = None
    relative_objective_change: Optional[float] = None
    absolute_objective_change: Optional[float] = None
    relative_running_objective_change: Optional[float] = None
    absolute_running_objective_change: Optional[float] = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> 'ConvergenceConfig':
        """Create convergence configuration from a 'Convergence Tests' section."""
        max_iterations = int(_require(data, "Maximum Iterations", "Optimization convergence"))
        kwargs = {attr: _optional_float(data, key) for key, attr in CRITERION_KEYS}
        return cls(
            max_iterations=max_iterations,
            min_iterations=int(data.get("Minimum Iterations", 0)),
            combo_type=str(data.get("Combo Type", "OR")),
            **kwargs
        )

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {
            "Maximum Iterations": self.max_iterations,
            "Minimum Iterations": self.min_iterations,
            "Combo Type": self.combo_type,
        }
        for key, attr in CRITERION_KEYS:
            value = getattr(self, attr)
            if value is not None:
                result[key] = value
        return result


@dataclass
class VolumeEnforcementConfig:
    """Configuration for the OC volume constraint sub-solve."""
    convergence_tolerance: float
    target_volume_fraction: float
    max_iterations: int
    min_volume_fraction: float = 0.1
    max_volume_fraction: float = 1.0
    acceptable_tolerance: Optional[float] = None
    use_newton_search: bool = True

    def __post_init__(self) -> None:
        if self.acceptable_tolerance is None:
            self.acceptable_tolerance = self.convergence_tolerance
        if self.min_volume_fraction > self.max_volume_fraction:
            raise InvalidParameterError(
                f"Volume Enforcement: 'Minimum Volume Fraction' ({self.min_volume_fraction}) "
                f"exceeds 'Maximum Volume Fraction' ({self.max_volume_fraction})."
            )
        if not self.min_volume_fraction <= self.target_volume_fraction <= self.max_volume_fraction:
            raise InvalidParameterError(
                f"Volume Enforcement: 'Target Volume Fraction' ({self.target_volume_fraction}) "
                f"must lie within [{self.min_volume_fraction}, {self.max_volume_fraction}]."
            )

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> 'VolumeEnforcementConfig':
        name = "Volume Enforcement"
        return cls(
            convergence_tolerance=float(_require(data, "Convergence Tolerance", name)),
            target_volume_fraction=float(_require(data, "Target Volume Fraction", name)),
            max_iterations=int(_require(data, "Maximum Iterations", name)),
            min_volume_fraction=float(data.get("Minimum Volume Fraction", 0.1)),
            max_volume_fraction=float(data.get("Maximum Volume Fraction", 1.0)),
            acceptable_tolerance=_optional_float(data, "Acceptable Tolerance"),
            use_newton_search=bool(data.get("Use Newton Search", True)),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "Convergence Tolerance": self.convergence_tolerance,
            "Target Volume Fraction": self.target_volume_fraction,
            "Maximum Iterations": self.max_iterations,
            "Minimum Volume Fraction": self.min_volume_fraction,
            "Maximum Volume Fraction": self.max_volume_fraction,
            "Acceptable Tolerance": self.acceptable_tolerance,
            "Use Newton Search": self.use_newton_search,
        }


@dataclass
class TopologyConfig:
    """Density bounds and initial value of the design field."""
    min_density: float = 0.0
    max_density: float = 1.0
    initial_value: float = 0.5

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> 'TopologyConfig':
        bounds = data.get("Bounds", [0.0, 1.0])
        if len(bounds) != 2:
            raise InvalidParameterError("Topology: 'Bounds' must be a [min, max] pair.")
        return cls(
            min_density=float(bounds[0]),
            max_density=float(bounds[1]),
            initial_value=float(_require(data, "Initial Value", "Topology")),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "Bounds": [self.min_density, self.max_density],
            "Initial Value": self.initial_value,
        }


@dataclass
class OptimizerConfig:
    """Main configuration for an optimizer run.

    Backend-specific fields are left as None when absent; each optimizer
    validates the fields it needs when it is constructed.
    """
    package: str
    convergence: Optional[ConvergenceConfig] = None

    # OC backend
    move_limiter: Optional[float] = None
    stabilization_parameter: Optional[float] = None
    volume_enforcement: Optional[VolumeEnforcementConfig] = None
    constraint_gradient: str = "None"

    # NLopt backend
    volume_fraction_constraint: Optional[float] = None
    method: Optional[str] = None
    constraint_tolerance: float = 1e-6

    topology: Optional[TopologyConfig] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_file(cls, config_path: Union[str, Path]) -> 'OptimizerConfig':
        """Load configuration from YAML or JSON file."""
        config_path = Path(config_path)

        if not config_path.exists():
            raise FileNotFoundError(f"Configuration file not found: {config_path}")

        with open(config_path, 'r') as f:
            if config_path.suffix.lower() in ['.yaml', '.yml']:
                data = yaml.safe_load(f)
            elif config_path.suffix.lower() == '.json':
                data = json.load(f)
            else:
                raise ValueError(f"Unsupported config file format: {config_path.suffix}")

        if not isinstance(data, Mapping):
            raise InvalidParameterError(f"Configuration file {config_path} is empty or malformed")

        params = dict(data.get("Optimizer", data))
        if "Topology" in data and "Topology" not in params:
            params["Topology"] = data["Topology"]
        return cls.from_dict(params)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> 'OptimizerConfig':
        """Create configuration from an 'Optimizer' parameter mapping."""
        package = str(_require(data, "Package", "Optimizer"))

        convergence = None
        if isinstance(data.get("Convergence Tests"), Mapping):
            convergence = ConvergenceConfig.from_dict(data["Convergence Tests"])

        volume_enforcement = None
        if isinstance(data.get("Volume Enforcement"), Mapping):
            volume_enforcement = VolumeEnforcementConfig.from_dict(data["Volume Enforcement"])

        constraint_gradient = "None"
        if isinstance(data.get("Constraint Enforcement"), Mapping):
            constraint_gradient = str(_require(
                data["Constraint Enforcement"], "Constraint Gradient", "Constraint Enforcement"
            ))

        topology = None
        if isinstance(data.get("Topology"), Mapping):
            topology = TopologyConfig.from_dict(data["Topology"])

        known = {
            "Package", "Convergence Tests", "Volume Enforcement", "Constraint Enforcement",
            "Topology", "Move Limiter", "Stabilization Parameter",
            "Volume Fraction Constraint", "Method", "Constraint Tolerance",
        }

        return cls(
            package=package,
            convergence=convergence,
            move_limiter=_optional_float(data, "Move Limiter"),
            stabilization_parameter=_optional_float(data, "Stabilization Parameter"),
            volume_enforcement=volume_enforcement,
            constraint_gradient=constraint_gradient,
            volume_fraction_constraint=_optional_float(data, "Volume Fraction Constraint"),
            method=str(data["Method"]) if "Method" in data else None,
            constraint_tolerance=float(data.get("Constraint Tolerance", 1e-6)),
            topology=topology,
            extra={k: v for k, v in data.items() if k not in known},
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert configuration to a parameter mapping."""
        result: Dict[str, Any] = {"Package": self.package}
        if self.convergence is not None:
            result["Convergence Tests"] = self.convergence.to_dict()
        if self.move_limiter is not None:
            result["Move Limiter"] = self.move_limiter
        if self.stabilization_parameter is not None:
            result["Stabilization Parameter"] = self.stabilization_parameter
        if self.volume_enforcement is not None:
            result["Volume Enforcement"] = self.volume_enforcement.to_dict()
        if self.constraint_gradient != "None":
            result["Constraint Enforcement"] = {"Constraint Gradient": self.constraint_gradient}
        if self.volume_fraction_constraint is not None:
            result["Volume Fraction Constraint"] = self.volume_fraction_constraint
        if self.method is not None:
            result["Method"] = self.method
            result["Constraint Tolerance"] = self.constraint_tolerance
        if self.topology is not None:
            result["Topology"] = self.topology.to_dict()
        result.update(self.extra)
        return result

    def save(self, config_path: Union[str, Path]) -> None:
        """Save configuration to file."""
        config_path = Path(config_path)

        with open(config_path, 'w') as f:
            if config_path.suffix.lower() in ['.yaml', '.yml']:
                yaml.dump({"Optimizer": self.to_dict()}, f, default_flow_style=False)
            elif config_path.suffix.lower() == '.json':
                json.dump({"Optimizer": self.to_dict()}, f, indent=2)
            else:
                raise ValueError(f"Unsupported config file format: {config_path.suffix}")
