from .base import DEFAULT_WAIT
from .error import BatchLoaderError, FetchContractError, LoadTimeout
from .threads import Loader
from .asyncio import AsyncLoader


__version__ = '0.1.0'

__all__ = [
    "DEFAULT_WAIT",
    "Loader",
    "AsyncLoader",
    "BatchLoaderError",
    "FetchContractError",
    "LoadTimeout",
]
