"""Package-wide constants for the vbgrowth model engine."""

try:
    from importlib.metadata import version as _pkg_version

    _VERSION = _pkg_version("vbgrowth")
except Exception:
    _VERSION = "dev"

RANDOM_SEED = 42

DAYS_PER_YEAR = 365.0  # CMR elapsed days -> years of growth

# Parameter component names, in site-effect column order
VB_COMPONENTS_FULL = ("L0", "Linf", "k")  # mixture / integrated
VB_COMPONENTS_CMR = ("Linf", "k")  # CMR-only (L0 replaced by capture length)

# Structural validity tolerances
SIMPLEX_TOL = 1e-8  # |sum(theta_j) - 1| allowed before a proposal is rejected
CHOLESKY_TOL = 1e-8  # row-norm / upper-triangle tolerance for L_Omega

# Default prior scales (all overridable through ModelConfig)
DEFAULT_B0_LOC = (3.2, 5.5, -1.0)  # log L0 ~ 25 mm, log Linf ~ 250 mm, log k ~ 0.37
DEFAULT_B0_SCALE = (0.5, 0.5, 1.0)
DEFAULT_SIGMA_VB_SCALE = 0.5
DEFAULT_SIGMA_OBS_SCALE = 0.5
DEFAULT_BETA_SCALE = 0.5
DEFAULT_LKJ_ETA = 2.0

# PSIS-LOO reliability (Vehtari et al. 2017)
KHAT_THRESHOLD = 0.7
KHAT_GOOD = 0.5
KHAT_VERY_BAD = 1.0

# LOO-PIT uniformity reference
PIT_GRID_SIZE = 101
PIT_ENVELOPE_SIMS = 1000
PIT_ENVELOPE_PROB = 0.99
