"""Outcome values returned by the sync components.

A handler either applied the event to the local ledger (``Applied``) or
deliberately left it alone (``Skipped``). Skips are acknowledged to Stripe
so a permanently unresolvable event cannot become a retry loop; the
dispatcher records them in the event ledger for replay.
"""

import enum
from dataclasses import dataclass
from typing import Any, Optional


class SkipReason(str, enum.Enum):
    UNLINKED_IDENTITY = "unlinked_identity"
    MISSING_PLAN_MAPPING = "missing_plan_mapping"
    MISSING_REFERENCE = "missing_reference"
    UNKNOWN_SUBSCRIPTION = "unknown_subscription"


@dataclass(frozen=True)
class Applied:
    record: Optional[Any] = None

    applied = True


@dataclass(frozen=True)
class Skipped:
    reason: SkipReason
    detail: str = ""

    applied = False
