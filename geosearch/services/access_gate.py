from enum import Enum
from typing import Optional, Sequence

import structlog

from geosearch.core.config import settings
from geosearch.models.dto import Entity, GateResult

logger = structlog.get_logger(__name__)


class TierStatus(str, Enum):
    FREE = "FREE"
    PAID = "PAID"


class AccessTierGate:
    """
    Splits an ordered result list into what the caller may see and how much is held back.

    Hidden entities are only counted: they are never masked or replaced, and the
    caller never receives them.
    """

    def __init__(self, free_limit: int = settings.FREE_TIER_LIMIT):
        self.free_limit = free_limit

    @staticmethod
    def tier_for(is_entitled: bool) -> TierStatus:
        return TierStatus.PAID if is_entitled else TierStatus.FREE

    def gate(self, ordered: Sequence[Entity], is_entitled: bool, free_limit: Optional[int] = None) -> GateResult:
        limit = self.free_limit if free_limit is None else max(0, free_limit)
        tier = self.tier_for(is_entitled)

        if tier == TierStatus.PAID:
            result = GateResult(visible=list(ordered), hidden_count=0)
        else:
            result = GateResult(
                visible=list(ordered[:limit]),
                hidden_count=max(0, len(ordered) - limit),
            )

        logger.debug(
            "access_gate",
            tier=tier.value,
            total=len(ordered),
            visible=len(result.visible),
            hidden=result.hidden_count,
        )
        return result


def gate(ordered: Sequence[Entity], is_entitled: bool, free_limit: int = settings.FREE_TIER_LIMIT) -> GateResult:
    return AccessTierGate(free_limit).gate(ordered, is_entitled)
