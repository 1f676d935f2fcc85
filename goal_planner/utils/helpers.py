"""
Utility helpers for the goal planner

Simple utility functions for ID and label generation.
"""

import uuid
from datetime import datetime


def generate_session_id(short=True):
    """
    Generate unique form session identifier

    Args:
        short (bool): If True, return 12-char hex. If False, return full UUID.

    Returns:
        str: Session ID

    Examples:
        >>> generate_session_id()
        'session-a3f7e2b9c1d2'
    """
    full_id = uuid.uuid4().hex
    return f"session-{full_id[:12] if short else full_id}"


def generate_snapshot_label(prefix="manual"):
    """
    Generate timestamped snapshot label

    Format: {prefix}_{YYYYMMDD_HHMMSS}_{short_uuid}

    Examples:
        >>> generate_snapshot_label()
        'manual_20251126_153045_a3f7e2b9'
    """
    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    return f"{prefix}_{timestamp}_{uuid.uuid4().hex[:8]}"
