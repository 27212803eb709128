import re

from enum import Enum
from typing import NamedTuple, Optional

DUPLICATE_MARKER = "deal proposal is identical to deal"
NOT_YET_SEALABLE_MARKER = "cannot seal a sector before"
# Spade's own backend crashing, the proposal itself is fine and will be offered again.
REMOTE_FAULT_MARKER = "PHP Fatal error"

DEAL_ID_PATTERN = re.compile(r"[a-z0-9]{8}-[a-z0-9]{4}-[a-z0-9]{4}-[a-z0-9]{4}-[a-z0-9]{12}")


class FailureKind(str, Enum):
    DUPLICATE = "duplicate"
    NOT_YET_SEALABLE = "not_yet_sealable"
    IGNORABLE = "ignorable"
    OTHER = "other"


class Classification(NamedTuple):
    kind: FailureKind
    deal_id: Optional[str] = None


def classify(message) -> Classification:
    """Classify a Spade failure message. Unknown formats are OTHER, never an error."""
    if not isinstance(message, str) or not message:
        return Classification(FailureKind.OTHER)

    if DUPLICATE_MARKER in message:
        found = DEAL_ID_PATTERN.search(message)
        if found:
            return Classification(FailureKind.DUPLICATE, found.group(0))
        return Classification(FailureKind.OTHER)

    if NOT_YET_SEALABLE_MARKER in message:
        return Classification(FailureKind.NOT_YET_SEALABLE)

    if REMOTE_FAULT_MARKER in message:
        return Classification(FailureKind.IGNORABLE)

    return Classification(FailureKind.OTHER)
