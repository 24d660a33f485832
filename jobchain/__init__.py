"""
jobchain - Declarative chains of dependent jobs

Jobs reference run inputs and each other's responses; a job is dispatched as
soon as everything it references is available, and the chain is done when
its terminal job completes.
"""

__version__ = "0.1.0"


__all__ = [
    "JobChain",
    "ChainRegistry",
    "JobChainConfig",
    "load_config",
    "get_jobchain_home",
]

from .chain import JobChain
from .config import JobChainConfig, load_config, get_jobchain_home
from .registry import ChainRegistry
