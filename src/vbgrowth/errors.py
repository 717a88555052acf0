"""Error taxonomy for the growth model engine.

Numerically degenerate proposals are not errors: the density returns ``-inf``
so an inference engine can reject them. Diagnostic conditions (high Pareto k,
PIT outside its envelope) are flags on result objects, never exceptions.
"""


class InvalidInputError(ValueError):
    """Malformed dataset rows or parameter inputs rejected at ingestion."""


class ConfigurationError(ValueError):
    """A model or simulation configuration that no model can be fit to."""


class DensityEvaluationError(FloatingPointError):
    """The log-density produced NaN. Always a bug in the engine."""
