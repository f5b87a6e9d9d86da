"""
Governance health metrics.
"""

from decimal import Decimal

import pytest

from conftest import HOUR, open_proposal
from govtally.governance.metrics import MetricsAggregator
from govtally.governance.voting import VoteAcceptance


@pytest.mark.asyncio
class TestMetrics:

    async def test_empty_store(self, service):
        metrics = await service.get_metrics()
        assert metrics.total_proposals == 0
        assert metrics.total_votes == 0
        assert metrics.avg_vote_weight == Decimal("0")
        assert metrics.participation_rate == Decimal("0")
        assert metrics.to_dict() == {
            "proposals": {"total": 0, "open": 0, "passed": 0, "rejected": 0, "executed": 0},
            "voting": {
                "totalVotes": 0,
                "avgVoteWeight": "0.0000000",
                "participationRate": "0.00",
            },
        }

    async def test_counts_and_averages(self, service, clock):
        passed = await open_proposal(service, clock, quorum="100")
        await service.submit_vote(passed.id, "bob", "FOR", "40")
        await service.submit_vote(passed.id, "carol", "FOR", "40")
        await service.submit_vote(passed.id, "dave", "AGAINST", "30")
        rejected = await open_proposal(service, clock, quorum="100")
        await open_proposal(service, clock, quorum="100", deadline_in=10 * HOUR)

        clock.advance(HOUR + 1)
        await service.evaluate(passed.id)
        await service.evaluate(rejected.id)
        await service.confirm_execution(passed.id, "executor")

        metrics = await service.get_metrics()
        assert metrics.total_proposals == 3
        assert metrics.open_proposals == 1
        assert metrics.passed_proposals == 0
        assert metrics.rejected_proposals == 1
        assert metrics.executed_proposals == 1
        assert metrics.total_votes == 3
        # 110 / 3, half-up at 7 digits
        assert metrics.avg_vote_weight == Decimal("36.6666667")
        # 3 votes over 3 proposals
        assert metrics.to_dict()["voting"]["participationRate"] == "1.00"

    async def test_rounding_is_stable(self, service, store, clock):
        proposal = await open_proposal(service, clock)
        for i, weight in enumerate(["1", "1", "1.0000001"]):
            await service.submit_vote(proposal.id, f"voter-{i}", "FOR", weight)

        aggregator = MetricsAggregator(store)
        first = (await aggregator.collect()).to_dict()
        second = (await aggregator.collect()).to_dict()
        assert first == second
        assert first["voting"]["avgVoteWeight"] == "1.0000000"

    async def test_participation_rounds_half_up(self, store, clock):
        proposals = [
            await store.insert_proposal(
                f"Proposal {i}", "Description", "alice", Decimal("1"), created_at=clock.now
            )
            for i in range(8)
        ]
        acceptance = VoteAcceptance(store, clock=clock, evaluate_on_vote=False)
        await acceptance.submit_vote(proposals[0].id, "bob", "FOR", "1")

        metrics = await MetricsAggregator(store, rate_places=2).collect()
        # 1 / 8 = 0.125, half-up to 0.13
        assert metrics.participation_rate == Decimal("0.13")

    async def test_weight_total_beyond_64_bit_range(self, service, clock):
        proposal = await open_proposal(service, clock)
        await service.submit_vote(proposal.id, "bob", "FOR", "900000000000")
        await service.submit_vote(proposal.id, "carol", "AGAINST", "900000000000")

        metrics = await service.get_metrics()
        assert metrics.total_votes == 2
        assert metrics.to_dict()["voting"]["avgVoteWeight"] == "900000000000.0000000"
        # Later calls keep working
        assert (await service.get_metrics()).to_dict() == metrics.to_dict()
