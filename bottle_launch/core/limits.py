# core/limits.py - SINGLE SOURCE OF TRUTH for retry counts, delays, thresholds
"""
All numeric limits, delays, and thresholds MUST be defined here.
No other module may define these values.

External tool calls carry no timeouts: they block on the polkit prompt or a
hardware-key touch for as long as the user needs.
"""


class Limits:
    """Operational limits and thresholds."""

    # ==========================================================================
    # Retry counts
    # ==========================================================================

    # Lock attempts after unmount (kernel may hold the dm node briefly)
    LOCK_MAX_ATTEMPTS = 3

    # Re-unlock + re-mount cycles after a stale device-mapper record
    STALE_MOUNT_MAX_RETRIES = 1

    # Password prompts before the CLI gives up on a wrong credential
    PASSWORD_MAX_ATTEMPTS = 3

    # ==========================================================================
    # Timing delays (seconds)
    # ==========================================================================

    # Delay between lock attempts
    LOCK_RETRY_DELAY = 0.5

    # Grace period between SIGTERM and SIGKILL for the sandboxed child
    CHILD_TERMINATE_GRACE = 2.0

    # Timed wait slice while the sandboxed child runs (signal handlers stay able to reap it)
    CHILD_WAIT_POLL_INTERVAL = 0.2

    # ==========================================================================
    # Size limits
    # ==========================================================================

    # Smallest bottle that still holds a LUKS2 header plus an ext4 filesystem
    MIN_BOTTLE_SIZE_BYTES = 32 * 1024 * 1024

    # Rotating log file
    MAX_LOG_FILE_SIZE = 5 * 1024 * 1024
    LOG_BACKUP_COUNT = 3
