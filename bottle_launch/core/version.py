# core/version.py - SINGLE SOURCE OF TRUTH for version string
"""
This is the ONLY place where VERSION is defined.
All other modules MUST import VERSION from here.
"""

VERSION = "0.3.0"

# Bumped whenever the KEY=VALUE config layout changes incompatibly
CONFIG_FORMAT_VERSION = "1"
