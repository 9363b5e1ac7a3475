"""
Error message length limits.

Error strings end up in Redis status entries, stream messages and webhook
payloads, so they are clipped to bounded lengths before being stored.
"""

from typing import Optional

from config import ERROR_DETAIL_MAX_LENGTH


def truncate_string(text: Optional[str], max_length: int) -> Optional[str]:
    """
    Truncate text to max_length characters, ending with "..." when clipped.

    Args:
        text: Text to truncate (None passes through)
        max_length: Maximum length of the result, including the ellipsis

    Returns:
        The original text if it fits, otherwise a clipped copy
    """
    if text is None:
        return None
    if len(text) <= max_length:
        return text
    # No room for an ellipsis
    if max_length < 4:
        return text[:max_length]
    return text[: max_length - 3] + "..."


def truncate_error(error: Optional[str], max_length: int = ERROR_DETAIL_MAX_LENGTH) -> Optional[str]:
    """Truncate an error message for storage (defaults to ERROR_DETAIL_MAX_LENGTH)."""
    return truncate_string(error, max_length)
