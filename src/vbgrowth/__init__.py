"""vbgrowth - hierarchical von Bertalanffy growth models for fish length data."""

__version__ = "2026.10.18"

from vbgrowth.calibration import LooPitResult as LooPitResult
from vbgrowth.calibration import calibration_summary as calibration_summary
from vbgrowth.data import GrowthData as GrowthData
from vbgrowth.density import GrowthModel as GrowthModel
from vbgrowth.density import log_density as log_density
from vbgrowth.errors import ConfigurationError as ConfigurationError
from vbgrowth.errors import DensityEvaluationError as DensityEvaluationError
from vbgrowth.errors import InvalidInputError as InvalidInputError
from vbgrowth.growth import mean_length as mean_length
from vbgrowth.loo import LooResult as LooResult
from vbgrowth.loo import psis_loo as psis_loo
from vbgrowth.model_spec import GrowthPriors as GrowthPriors
from vbgrowth.model_spec import ModelConfig as ModelConfig
from vbgrowth.model_spec import ModelVariant as ModelVariant
from vbgrowth.model_spec import PriorSpec as PriorSpec
from vbgrowth.params import GrowthParams as GrowthParams
from vbgrowth.params import ParameterLayout as ParameterLayout
from vbgrowth.predictive import generated_quantities as generated_quantities
from vbgrowth.simulate import SimulationConfig as SimulationConfig
from vbgrowth.simulate import TrueParameters as TrueParameters
from vbgrowth.simulate import lognormal_capture_lengths as lognormal_capture_lengths
from vbgrowth.simulate import simulate_dataset as simulate_dataset
