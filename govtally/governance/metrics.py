"""
Governance health metrics: proposal counts per status, vote volume, average
vote weight and participation rate. Read-only.
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import TYPE_CHECKING, Any, Dict

from ..constants import AVERAGE_WEIGHT_DECIMALS, RATE_DECIMALS
from .weight import average, format_weight, from_units, ratio

if TYPE_CHECKING:
    from ..database_sqlite import GovernanceStore


@dataclass(frozen=True)
class GovernanceMetrics:
    total_proposals: int
    open_proposals: int
    passed_proposals: int
    rejected_proposals: int
    executed_proposals: int
    total_votes: int
    avg_vote_weight: Decimal
    participation_rate: Decimal

    def to_dict(self) -> Dict[str, Any]:
        return {
            "proposals": {
                "total": self.total_proposals,
                "open": self.open_proposals,
                "passed": self.passed_proposals,
                "rejected": self.rejected_proposals,
                "executed": self.executed_proposals,
            },
            "voting": {
                "totalVotes": self.total_votes,
                "avgVoteWeight": format_weight(self.avg_vote_weight),
                "participationRate": format_weight(self.participation_rate),
            },
        }


class MetricsAggregator:
    """Derives GovernanceMetrics from one consistent store snapshot."""

    def __init__(
        self,
        store: "GovernanceStore",
        weight_places: int = AVERAGE_WEIGHT_DECIMALS,
        rate_places: int = RATE_DECIMALS,
    ):
        self.store = store
        self.weight_places = weight_places
        self.rate_places = rate_places

    async def collect(self) -> GovernanceMetrics:
        snapshot = await self.store.metrics_snapshot()
        total_votes = snapshot["votes"]
        total_proposals = snapshot["total"]
        return GovernanceMetrics(
            total_proposals=total_proposals,
            open_proposals=snapshot["open"],
            passed_proposals=snapshot["passed"],
            rejected_proposals=snapshot["rejected"],
            executed_proposals=snapshot["executed"],
            total_votes=total_votes,
            avg_vote_weight=average(
                from_units(snapshot["weight_units"]), total_votes, self.weight_places
            ),
            # votes per proposal; 0 on an empty store
            participation_rate=ratio(total_votes, total_proposals, self.rate_places),
        )
