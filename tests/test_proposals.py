"""
Proposal model, lifecycle transitions and list filters.
"""

from decimal import Decimal

import pytest

from govtally.governance.proposals import (
    InvalidFilter,
    InvalidProposalError,
    InvalidTransition,
    Proposal,
    ProposalFilters,
    ProposalStatus,
    ensure_transition,
    is_valid_transition,
)
from govtally.governance.weight import InvalidWeight


def _proposal(**overrides):
    fields = dict(
        id="p1",
        title="Raise fee cap",
        description="Raise the protocol fee cap to 2%",
        proposer_id="alice",
        quorum="100",
        created_at=1000.0,
        deadline=2000.0,
    )
    fields.update(overrides)
    return Proposal(**fields)


# ══════════════════════════════════════════════════════════════════════
#  MODEL
# ══════════════════════════════════════════════════════════════════════

class TestProposalModel:

    def test_defaults(self):
        p = _proposal()
        assert p.status == ProposalStatus.OPEN
        assert p.quorum == Decimal("100")
        assert p.is_votable
        assert not p.is_terminal

    @pytest.mark.parametrize("field", ["title", "description", "proposer_id"])
    def test_required_fields(self, field):
        with pytest.raises(InvalidProposalError):
            _proposal(**{field: ""})

    def test_whitespace_title_rejected(self):
        with pytest.raises(InvalidProposalError):
            _proposal(title="   ")

    def test_title_too_long(self):
        with pytest.raises(InvalidProposalError, match="exceeds"):
            _proposal(title="x" * 201)

    @pytest.mark.parametrize("quorum", ["0", "-5", "abc", 1.5])
    def test_quorum_must_be_positive_weight(self, quorum):
        with pytest.raises(InvalidWeight):
            _proposal(quorum=quorum)

    def test_deadline_after_creation(self):
        with pytest.raises(InvalidProposalError):
            _proposal(deadline=1000.0)

    def test_deadline_passed_is_strict(self):
        p = _proposal()
        assert not p.deadline_passed(2000.0)
        assert p.deadline_passed(2000.001)

    def test_no_deadline_never_passes(self):
        p = _proposal(deadline=None)
        assert not p.deadline_passed(10**12)
        assert not p.is_due(10**12)

    def test_to_dict(self):
        d = _proposal().to_dict()
        assert d["status"] == "OPEN"
        assert d["quorum"] == "100.0000000"
        assert d["proposerId"] == "alice"
        assert d["executedTx"] is None


# ══════════════════════════════════════════════════════════════════════
#  LIFECYCLE
# ══════════════════════════════════════════════════════════════════════

class TestTransitions:

    @pytest.mark.parametrize("current,new", [
        (ProposalStatus.OPEN, ProposalStatus.PASSED),
        (ProposalStatus.OPEN, ProposalStatus.REJECTED),
        (ProposalStatus.PASSED, ProposalStatus.EXECUTED),
    ])
    def test_legal(self, current, new):
        assert is_valid_transition(current, new)
        ensure_transition("p1", current, new)

    @pytest.mark.parametrize("current,new", [
        (ProposalStatus.OPEN, ProposalStatus.EXECUTED),
        (ProposalStatus.PASSED, ProposalStatus.REJECTED),
        (ProposalStatus.PASSED, ProposalStatus.OPEN),
        (ProposalStatus.REJECTED, ProposalStatus.PASSED),
        (ProposalStatus.EXECUTED, ProposalStatus.OPEN),
    ])
    def test_illegal(self, current, new):
        with pytest.raises(InvalidTransition) as exc:
            ensure_transition("p1", current, new)
        assert exc.value.current == current
        assert exc.value.requested == new

    def test_terminal_states(self):
        assert _proposal(status=ProposalStatus.REJECTED).is_terminal
        assert _proposal(status=ProposalStatus.EXECUTED).is_terminal
        assert not _proposal(status=ProposalStatus.PASSED).is_terminal


# ══════════════════════════════════════════════════════════════════════
#  FILTERS
# ══════════════════════════════════════════════════════════════════════

class TestProposalFilters:

    def test_defaults(self):
        f = ProposalFilters.from_dict(None)
        assert f.status is None
        assert f.limit == 20
        assert f.offset == 0

    def test_status_name_parsed(self):
        assert ProposalFilters.from_dict({"status": "passed"}).status == ProposalStatus.PASSED

    def test_alias_and_blank_values(self):
        f = ProposalFilters.from_dict({"proposerId": "bob", "status": "", "limit": None})
        assert f.proposer_id == "bob"
        assert f.status is None
        assert f.limit == 20

    def test_unknown_key_rejected(self):
        with pytest.raises(InvalidFilter, match="Unknown proposal filter"):
            ProposalFilters.from_dict({"state": "OPEN"})

    def test_bad_status(self):
        with pytest.raises(InvalidFilter, match="Must be one of"):
            ProposalFilters.from_dict({"status": "PENDING"})

    @pytest.mark.parametrize("limit", [0, -1, "abc", 501, True])
    def test_bad_limit(self, limit):
        with pytest.raises(InvalidFilter):
            ProposalFilters(limit=limit)

    @pytest.mark.parametrize("offset", [-1, "x"])
    def test_bad_offset(self, offset):
        with pytest.raises(InvalidFilter):
            ProposalFilters(offset=offset)

    def test_string_numbers_accepted(self):
        f = ProposalFilters.from_dict({"limit": "5", "offset": "10"})
        assert (f.limit, f.offset) == (5, 10)
