"""Case and image identifier allocation and validation."""

import re
import uuid

# Identifiers become blob keys; restrict them to prevent directory traversal
_IDENTIFIER_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")
MAX_IDENTIFIER_LENGTH = 128


def new_case_id() -> str:
    """Allocate a fresh case id (random UUID4, 122 random bits)."""
    return str(uuid.uuid4())


def validate_identifier(value: str) -> bool:
    """
    Validate a case or image identifier before it is used as part of a blob key.

    Args:
        value: Case id, or image id (normally the SOP Instance UID)

    Returns:
        True if the identifier is valid

    Raises:
        ValueError: If the identifier is empty, too long or contains
            characters outside [A-Za-z0-9._-]
    """
    if len(value) > MAX_IDENTIFIER_LENGTH or not _IDENTIFIER_PATTERN.match(value):
        raise ValueError(
            f"Invalid identifier: '{value}'. "
            f"Identifiers must match [A-Za-z0-9._-] and be at most {MAX_IDENTIFIER_LENGTH} characters"
        )
    return True
