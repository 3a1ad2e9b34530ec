"""
Tokenization Treasury Package

Core imports are lazily loaded so the CLI and the ledger can be used
without pulling in the chain stack.  For direct module access, import from
submodules:

    from treasury.ledger import Operation, InMemoryOperationStore
    from treasury.chain import TransactionBuilder
    from treasury.exceptions import NotFoundError
"""

__version__ = "1.0.0"


# Lazy imports to avoid loading everything at package import
def __getattr__(name):
    """Lazy module loading."""
    if name == 'TreasuryService':
        from .service import TreasuryService
        return TreasuryService
    elif name == 'Operation':
        from .ledger.operation import Operation
        return Operation
    elif name == 'TreasuryException':
        from .exceptions import TreasuryException
        return TreasuryException
    elif name == 'load_config':
        from .config import load_config
        return load_config
    raise AttributeError(f"module 'treasury' has no attribute {name!r}")

__all__ = ['TreasuryService', 'Operation', 'TreasuryException', 'load_config']
