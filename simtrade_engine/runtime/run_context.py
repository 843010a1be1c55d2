"""
Run identifiers.
"""

from datetime import UTC, datetime
from uuid import uuid4


def generate_run_id(prefix: str = "backtest") -> str:
    """
    Generate a unique run ID.

    Format: {prefix}_{timestamp}_{uuid8}
    Example: backtest_20240115_143022_a1b2c3d4

    Args:
        prefix: ID prefix

    Returns:
        Unique run ID string.
    """
    timestamp = datetime.now(UTC).strftime("%Y%m%d_%H%M%S")
    short_uuid = uuid4().hex[:8]
    return f"{prefix}_{timestamp}_{short_uuid}"
