"""Default configuration constants for the Smart Distribution engine."""

import os

# Great-circle distance
EARTH_RADIUS_M = 6371000.0

# Proximity threshold used when the caller does not pick one (meters)
DEFAULT_THRESHOLD_METERS = 500.0

# Latitude above which the grid stops narrowing longitude columns
GRID_MAX_ABS_LAT = 89.0

# Partner slots
MIN_PARTNERS = 2
DEFAULT_PARTNER_NAMES = ["Partner A", "Partner B"]

# Legacy two-partner schema: partner letters map onto slot indices
LEGACY_PARTNER_SLOTS = {"A": 0, "B": 1}

# Label for structures with a blank category / region
UNKNOWN_GROUP = "unknown"

# Activation scope when the distribution had no category filter
ALL_SCOPE = "all"

# Catalog statuses that exclude a structure from distribution
REMOVED_STATUSES = {"removed", "إزالة", "ازالة", "تمت الإزالة"}

# Audit actions
AUDIT_ACTIONS = [
    "generate",
    "redistribute",
    "swap",
    "remove_category",
    "remove_region",
    "activate",
    "deactivate",
    "delete",
]

# Persistence
STORE_LOCATOR = os.getenv("SMART_DISTRIBUTION_DB", "smart_distribution.db")
