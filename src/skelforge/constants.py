"""Shared constants and paths for SkelForge."""

import math
from pathlib import Path

# Package paths
PACKAGE_ROOT = Path(__file__).parent
CONFIG_DIR = PACKAGE_ROOT / "config"

# Joint hierarchy robustness limits
MAX_HIERARCHY_DEPTH = 100
MAX_CHILDREN_PER_NODE = 1000
MAX_TRANSFORM_MAGNITUDE = 1.0e12

# Solver defaults
DEFAULT_ITERATIONS = 10
DEFAULT_TOLERANCE = 0.001
DEFAULT_EFFECTOR_INFLUENCE = 1.0
DEFAULT_ORIENTATION_WEIGHT = 0.1
DEFAULT_DAMPENING = math.pi  # max rotation (radians) per joint per iteration
DEFAULT_SMOOTHING_FACTOR = 1.0  # 1.0 = no temporal smoothing

# Propagation
DEFAULT_DECAY = 0.8
ULTIMATE_EFFECTOR_MULTIPLIER = 1.2
INTERMEDIARY_EFFECTOR_MULTIPLIER = 0.8
ANCESTOR_WEIGHT_DEPTH = 5

# Kusudama
DEFAULT_TWIST_LIMITS = (-180.0, 180.0)
DEFAULT_TWIST_AXIS = (0.0, 1.0, 0.0)  # bones point along +Y (glTF convention)
PASSAGE_SAMPLES = 33  # samples along the geodesic between adjacent cones
BOUNDARY_EPSILON = 1e-9  # projected orientations land this far inside
CONE_TOLERANCE = 1e-12  # rounding slack on cone and passage membership
TWIST_TOLERANCE = 1e-9  # degrees
SWING_BISECTIONS = 40  # steps when shrinking a swing back inside the cones
