"""Exception types for epigrid.

ConfigurationError: caller bug detected at construction/compile time
  (dimension mismatches, out-of-range blend scalars, misaligned recording).
InvariantViolation: modelling invariant broken while stepping
  (negative counts, NaN rates, hosts created or destroyed by transitions).
"""


class ConfigurationError(ValueError):
    """Invalid parameters, operators or run settings."""


class InvariantViolation(RuntimeError):
    """A runtime conservation or positivity check failed."""
