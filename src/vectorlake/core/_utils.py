"""
Shared utility functions for VectorLake modules.
"""

import asyncio
import functools
import re
import time
from typing import Callable, List, Tuple, TypeVar, ParamSpec, Union

P = ParamSpec('P')
T = TypeVar('T')

_DIGITS = re.compile(r"(\d+)")


# =============================================================================
# Thread Pool Executor Helper
# =============================================================================

async def run_in_thread(func: Callable[P, T], *args: P.args, **kwargs: P.kwargs) -> T:
    """
    Run a blocking function in a thread pool executor.

    Used for filesystem I/O and columnar encode/decode of large partitions
    so the event loop keeps serving searches.

    Example:
        data = await run_in_thread(path.read_bytes)
    """
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(None, functools.partial(func, *args, **kwargs))


# =============================================================================
# Time & Ordering Helpers
# =============================================================================

def now_ms() -> int:
    """Wall-clock time in integer epoch milliseconds."""
    return int(time.time() * 1000)


def natural_sort_key(value: str) -> Tuple[Tuple[Tuple[int, Union[int, str]], ...], str]:
    """
    Sort key that orders embedded numbers numerically.

    ``cluster-2`` sorts before ``cluster-10``; pure text falls back to
    lexicographic order.
    """
    parts: List[Tuple[int, Union[int, str]]] = []
    for chunk in _DIGITS.split(value):
        if not chunk:
            continue
        if chunk.isdigit():
            parts.append((0, int(chunk)))
        else:
            parts.append((1, chunk))
    return tuple(parts), value
