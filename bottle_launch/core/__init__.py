# bottle-launch SSOT core modules
# This package contains all single-source-of-truth modules for bottle-launch.
# =============================================================================
# Version, paths and limits
# =============================================================================
from .limits import Limits
from .paths import Paths
from .version import VERSION

# =============================================================================
# Public API
# =============================================================================
__all__ = [
    "VERSION",
    "Limits",
    "Paths",
]
