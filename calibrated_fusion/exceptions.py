"""
Error Taxonomy

Configuration and programming errors (always fatal):
    InvalidDimension, IndexOutOfRange, DegenerateTable, ShapeMismatch, ConfigError

Scenario-level failures (recorded per replicate, escalated past a threshold):
    InsufficientSelectionYield, ScenarioInfeasible

Non-fatal numerical warning:
    NotFullyConverged
"""


class InvalidDimension(ValueError):
    """An axis has fewer than one category, or values do not fit the axes."""


class IndexOutOfRange(IndexError):
    """A cell index lies outside its axis."""


class DegenerateTable(ValueError):
    """A table has zero total mass where a distribution is required."""


class ShapeMismatch(ValueError):
    """Two tables that must share axes do not."""


class ConfigError(ValueError):
    """User-fixable scenario configuration error."""


class SimulationError(RuntimeError):
    """Base class for scenario-level simulation failures."""


class InsufficientSelectionYield(SimulationError):
    """Candidate budget exhausted before Sample C reached its target size."""

    def __init__(self, target: int, accepted: int, candidates: int):
        self.target = target
        self.accepted = accepted
        self.candidates = candidates
        super().__init__(
            f"Sample C reached {accepted}/{target} units after {candidates} "
            f"candidates; selection mechanism too extreme for the candidate budget"
        )


class ScenarioInfeasible(SimulationError):
    """Too many replicates failed for the scenario to be meaningful."""

    def __init__(self, scenario: str, n_failed: int, n_attempted: int, max_rate: float):
        self.scenario = scenario
        self.n_failed = n_failed
        self.n_attempted = n_attempted
        self.max_rate = max_rate
        super().__init__(
            f"Scenario '{scenario}': {n_failed}/{n_attempted} replicates failed "
            f"(max failure rate {max_rate:.2%})"
        )


class NotFullyConverged(UserWarning):
    """An iterative fit stopped at its iteration cap before reaching tolerance."""
