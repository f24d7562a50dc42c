"""
Selection Mechanisms for the Biased Sample C

A SelectionProfile maps each (X, Y, Z) cell to an inclusion probability. It is
a deterministic function of category indices and parameters; randomness only
enters when the sampler thins candidates with these probabilities.

Every pattern produces a shape in (0, 1] with peak 1, scaled by
`base_probability`, so the base is the highest inclusion probability in the
table and all probabilities are valid and strictly positive.

MAR patterns (depend on X only):
    constant           - 1 everywhere
    linear_decreasing  - 1 at the first X category down to `low` at the last
    u_shaped           - `low` at `midpoint`, rising quadratically to 1 at the far end
    step               - 1 below `jump`, `low` from `jump` on
    extreme            - exp(-strength * |x - center|), concentrated at `center`

MNAR patterns (depend on Y and Z):
    constant           - 1 everywhere
    main_effects       - exp(beta_y*g(y) + beta_z*g(z)), no cross term
    interaction        - main effects + gamma*g(y)*g(z)

where g runs linearly from 1 (first category) to 0 (last), so the interaction
term concentrates inclusion on the (Y=1, Z=1) corner. gamma is numeric or one
of the named strengths in INTERACTION_LEVELS.
"""

import numpy as np
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional, Tuple, Union

from .exceptions import ConfigError
from .table import ContingencyTable, xyz_axes


MECHANISMS = ('constant', 'mar', 'mnar')

MAR_PATTERNS = {
    'constant': (),
    'linear_decreasing': ('low',),
    'u_shaped': ('low', 'midpoint'),
    'step': ('low', 'jump'),
    'extreme': ('strength', 'center'),
}

MNAR_PATTERNS = {
    'constant': (),
    'main_effects': ('beta_y', 'beta_z'),
    'interaction': ('beta_y', 'beta_z', 'interaction'),
}

INTERACTION_LEVELS = {
    'weak': 0.5,
    'moderate': 1.0,
    'strong': 2.0,
    'extreme': 4.0,
}


def decreasing_scores(k: int) -> np.ndarray:
    """Scores from 1 (first category) down to 0 (last)."""
    if k == 1:
        return np.ones(1)
    return np.linspace(1.0, 0.0, k)


def interaction_strength(value: Union[str, float]) -> float:
    """Resolve a named or numeric interaction strength."""
    if isinstance(value, str):
        try:
            return INTERACTION_LEVELS[value.lower()]
        except KeyError:
            raise ConfigError(
                f"Unknown interaction level {value!r}; use one of {list(INTERACTION_LEVELS)} or a number"
            ) from None
    gamma = float(value)
    if not np.isfinite(gamma):
        raise ConfigError(f"interaction must be finite, got {value!r}")
    return gamma


def mar_shape(
    pattern: str,
    k: int,
    low: float = 0.2,
    midpoint: Optional[float] = None,
    jump: Optional[int] = None,
    strength: float = 2.0,
    center: int = 0
) -> np.ndarray:
    """
    Relative inclusion weight per X category, peak 1.

    Args:
        pattern: One of MAR_PATTERNS
        k: Number of X categories
        low: Floor weight for linear_decreasing / u_shaped / step
        midpoint: Index of the U minimum (default: middle category)
        jump: First index on the low side of the step (default: k // 2)
        strength: Decay rate for the extreme pattern
        center: Category index the extreme pattern concentrates on

    Returns:
        Array of shape (k,) with values in (0, 1]
    """
    idx = np.arange(k, dtype=float)

    if pattern == 'constant':
        return np.ones(k)
    if pattern == 'linear_decreasing':
        if k == 1:
            return np.ones(1)
        return 1.0 - (1.0 - low) * idx / (k - 1)
    if pattern == 'u_shaped':
        m = (k - 1) / 2.0 if midpoint is None else float(midpoint)
        span = max(m, (k - 1) - m)
        if span == 0:
            return np.ones(k)
        return low + (1.0 - low) * ((idx - m) / span) ** 2
    if pattern == 'step':
        j = k // 2 if jump is None else int(jump)
        return np.where(idx < j, 1.0, low)
    if pattern == 'extreme':
        return np.exp(-strength * np.abs(idx - center))

    raise ConfigError(f"Unknown MAR pattern {pattern!r}; use one of {list(MAR_PATTERNS)}")


def mnar_shape(
    pattern: str,
    y_categories: int,
    z_categories: int,
    beta_y: float = 1.0,
    beta_z: float = 1.0,
    interaction: Union[str, float] = 'moderate'
) -> np.ndarray:
    """
    Relative inclusion weight per (Y, Z) cell, peak 1.

    Returns:
        Array of shape (y_categories, z_categories) with values in (0, 1]
    """
    gy = decreasing_scores(y_categories)[:, None]
    gz = decreasing_scores(z_categories)[None, :]

    if pattern == 'constant':
        return np.ones((y_categories, z_categories))
    if pattern == 'main_effects':
        log_w = beta_y * gy + beta_z * gz
    elif pattern == 'interaction':
        log_w = beta_y * gy + beta_z * gz + interaction_strength(interaction) * gy * gz
    else:
        raise ConfigError(f"Unknown MNAR pattern {pattern!r}; use one of {list(MNAR_PATTERNS)}")

    return np.exp(log_w - log_w.max())


def _freeze_params(params) -> Tuple[Tuple[str, Any], ...]:
    if not params:
        return ()
    items = params.items() if isinstance(params, Mapping) else params
    return tuple(sorted((str(k), v) for k, v in items))


@dataclass(frozen=True)
class SelectionProfile:
    """
    Inclusion-probability profile for Sample C.

    Attributes:
        mechanism: 'constant', 'mar' (depends on X) or 'mnar' (depends on Y, Z)
        pattern: Pattern name for the mechanism
        base_probability: Peak inclusion probability in (0, 1]
        params: Pattern parameters (see module docstring); a mapping is
                stored as a sorted tuple of (name, value) pairs

    Example:
        >>> profile = SelectionProfile('mnar', 'interaction', 0.5, {'interaction': 'extreme'})
        >>> probs = profile.probabilities(6, 3, 3)
        >>> probs.values.max()
        0.5
    """
    mechanism: str = 'constant'
    pattern: str = 'constant'
    base_probability: float = 0.1
    params: Tuple[Tuple[str, Any], ...] = ()

    def __post_init__(self):
        mechanism = str(self.mechanism).lower()
        object.__setattr__(self, 'mechanism', mechanism)
        object.__setattr__(self, 'params', _freeze_params(self.params))
        params = self.param_dict

        if mechanism not in MECHANISMS:
            raise ConfigError(f"Unknown selection mechanism {self.mechanism!r}; use one of {MECHANISMS}")
        if mechanism == 'constant' and self.pattern != 'constant':
            raise ConfigError("The constant mechanism only supports pattern 'constant'")

        patterns = MNAR_PATTERNS if mechanism == 'mnar' else MAR_PATTERNS
        if self.pattern not in patterns:
            raise ConfigError(
                f"Unknown {mechanism} pattern {self.pattern!r}; use one of {list(patterns)}"
            )
        unknown = set(params) - set(patterns[self.pattern])
        if unknown:
            raise ConfigError(
                f"Pattern '{self.pattern}' does not take parameters {sorted(unknown)}; "
                f"allowed: {list(patterns[self.pattern])}"
            )

        base = float(self.base_probability)
        if not np.isfinite(base) or not 0.0 < base <= 1.0:
            raise ConfigError(f"base_probability must be in (0, 1], got {self.base_probability!r}")

        low = params.get('low')
        if low is not None and not 0.0 < float(low) <= 1.0:
            raise ConfigError(f"low must be in (0, 1], got {low!r}")
        strength = params.get('strength')
        if strength is not None and float(strength) < 0:
            raise ConfigError(f"strength must be >= 0, got {strength!r}")
        if 'interaction' in params:
            interaction_strength(params['interaction'])

    @classmethod
    def from_dict(cls, config: Dict[str, Any]) -> 'SelectionProfile':
        unknown = set(config) - set(cls.__dataclass_fields__)
        if unknown:
            raise ConfigError(f"Unknown selection settings: {sorted(unknown)}")
        return cls(**config)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'mechanism': self.mechanism,
            'pattern': self.pattern,
            'base_probability': float(self.base_probability),
            'params': self.param_dict,
        }

    @property
    def param_dict(self) -> Dict[str, Any]:
        return dict(self.params)

    @property
    def label(self) -> str:
        if self.mechanism == 'constant':
            return f"constant({self.base_probability:g})"
        return f"{self.mechanism}:{self.pattern}"

    def probabilities(self, x_categories: int, y_categories: int, z_categories: int) -> ContingencyTable:
        """
        Inclusion probability for every (X, Y, Z) cell.

        Returns:
            ContingencyTable of probabilities in [0, base_probability]; very steep
            patterns can underflow to exactly 0
        """
        shape = (x_categories, y_categories, z_categories)
        params = self.param_dict

        if self.mechanism == 'mar':
            if self.pattern == 'extreme' and 'center' in params:
                center = int(params['center'])
                if not 0 <= center < x_categories:
                    raise ConfigError(f"center {center} outside X categories 0..{x_categories - 1}")
            weights = mar_shape(self.pattern, x_categories, **params)[:, None, None]
        elif self.mechanism == 'mnar':
            weights = mnar_shape(self.pattern, y_categories, z_categories, **params)[None, :, :]
        else:
            weights = np.ones(1)

        probs = float(self.base_probability) * np.broadcast_to(weights, shape)
        return ContingencyTable(probs, xyz_axes(*shape))

    def inclusion_probability(self, cell, x_categories: int, y_categories: int, z_categories: int) -> float:
        """Inclusion probability of a single (x, y, z) cell."""
        return self.probabilities(x_categories, y_categories, z_categories).get(cell)


def constant_profile(base_probability: float = 0.1) -> SelectionProfile:
    """No selection bias: every unit is kept with the same probability."""
    return SelectionProfile('constant', 'constant', base_probability)
