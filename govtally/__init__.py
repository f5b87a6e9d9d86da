"""
govtally: weighted governance proposal tally engine.

Core imports are lazily loaded so that importing a submodule does not pull in
the store or the HTTP client. For direct module access, import from
submodules:

    from govtally.database_sqlite import GovernanceStore
    from govtally.governance import GovernanceService
    from govtally.config import load_config
"""

__version__ = "0.1.0"


def __getattr__(name):
    """Lazy module loading."""
    if name == 'GovernanceStore':
        from .database_sqlite import GovernanceStore
        return GovernanceStore
    elif name == 'GovernanceService':
        from .governance import GovernanceService
        return GovernanceService
    elif name == 'load_config':
        from .config import load_config
        return load_config
    raise AttributeError(f"module 'govtally' has no attribute {name!r}")

__all__ = ['GovernanceStore', 'GovernanceService', 'load_config']
