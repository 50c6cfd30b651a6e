"""
Search-space bookkeeping and scale-out.

This module provides:
- Range-compressed attempted-index set (attempts.py)
- Sharded multi-process search (parallel.py, import it explicitly:
  ``from slot_search.search.parallel import parallel_search``)
"""

from .attempts import AttemptSet

__all__ = [
    'AttemptSet',
]
