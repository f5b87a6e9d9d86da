"""
govtally Exceptions

Base and transient exception classes shared across govtally. Governance
rule violations live next to the rules they guard
(``govtally.governance.proposals`` / ``govtally.governance.voting``).
"""


class GovtallyException(Exception):
    """Base exception for govtally."""
    pass


class TransientError(GovtallyException):
    """A collaborator did not answer. Safe for the caller to retry with backoff."""
    pass


class StoreUnavailable(TransientError):
    """The proposal store could not complete the operation."""
    pass


class OnChainSourceUnavailable(TransientError):
    """The on-chain event source could not be queried."""
    pass


class ConfigurationError(GovtallyException):
    """Configuration error."""
    pass


class GovernanceError(GovtallyException):
    """Base governance exception: a request broke a governance rule."""
    pass
