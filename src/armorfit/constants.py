"""Shared constants and paths for armorfit."""

from pathlib import Path

# Package paths
PACKAGE_ROOT = Path(__file__).parent
ASSETS_DIR = PACKAGE_ROOT / "assets"
CONFIG_DIR = ASSETS_DIR / "config"

REGION_TABLE_FILE = "body_regions.json"
FITTING_PRESETS_FILE = "fitting_presets.json"

# Skinning layout
MAX_INFLUENCES = 4
WEIGHT_SUM_TOLERANCE = 1e-5

# Geometry tolerances
DEGENERATE_AREA_EPS = 1e-12
RAY_T_MIN = 1e-6
DIRECTION_EPS = 1e-12

# BVH build defaults (SAH, binned)
BVH_MAX_LEAF_TRIS = 5
BVH_MAX_DEPTH = 40
BVH_SAH_BINS = 12

# Index cache: rebuild after this many seconds, prune after CLEANUP_FACTOR x age
INDEX_CACHE_MAX_AGE = 5.0
INDEX_CACHE_CLEANUP_FACTOR = 6.0
INDEX_CACHE_EPSILON = 1e-6

# Region segmentation
REGION_MIN_VERTEX_COUNT = 10
PROPORTIONAL_TORSO_BAND = (0.25, 0.75)

# Shrinkwrap: Gaussian sigma = max_hop / GAUSSIAN_SIGMA_DIVISOR gives ~5% at max hop
GAUSSIAN_SIGMA_DIVISOR = 2.45
FEATURE_SMOOTHING_SCALE = 0.25
PUSH_BACK_FRACTIONS = (0.5, 0.75, 1.0)
