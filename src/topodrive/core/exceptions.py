"""Error types for topodrive."""


class InvalidParameterError(ValueError):
    """Raised for invalid configuration or invalid optimizer state.

    Covers unknown package or method names, missing parameter sections,
    an unbound solver interface and numerical failures such as a volume
    constraint that cannot be enforced within its iteration budget.
    """
