"""
Shared fixtures: an in-memory store, a controllable clock, and a service
wired to both.
"""

import os
import sys

import pytest
import pytest_asyncio

# ── Path setup ────────────────────────────────────────────────────────
ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from govtally.chain.events import StaticEventSource
from govtally.database_sqlite import GovernanceStore
from govtally.governance.service import GovernanceService

T0 = 1_700_000_000.0
HOUR = 3600.0


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: float = T0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> float:
        self.now += seconds
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def event_source():
    return StaticEventSource(parameters={"quorumFloor": "10"})


@pytest_asyncio.fixture
async def store():
    s = await GovernanceStore.open(":memory:")
    yield s
    await s.close()


@pytest_asyncio.fixture
async def service(store, clock, event_source):
    svc = GovernanceService(
        store,
        event_source=event_source,
        clock=clock,
        parameters={"votingPeriod": 3600, "tieBreak": "REJECTED"},
    )
    yield svc
    await svc.close()


async def open_proposal(service, clock, quorum="100", deadline_in=HOUR, **kwargs):
    """Create a proposal through the service; returns the Proposal."""
    created = await service.create_proposal(
        title=kwargs.pop("title", "Raise fee cap"),
        description=kwargs.pop("description", "Raise the protocol fee cap to 2%"),
        proposer_id=kwargs.pop("proposer_id", "alice"),
        quorum=quorum,
        deadline=None if deadline_in is None else clock.now + deadline_in,
        **kwargs,
    )
    return created.proposal
