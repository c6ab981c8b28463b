"""Multi-group splitting of aggregate matrices for consensus analysis.

Example Usage
-------------
>>> from pseudorep.core.stratify import split_result
>>> split = split_result(pseudobulk_result, "msex", levels=["0", "1"])
>>> split.sizes()
{'0': 33, '1': 33}
"""

from .config import StratifyConfig
from .splitter import SplitResult, split_by_label, split_result

__all__ = [
    "StratifyConfig",
    "SplitResult",
    "split_by_label",
    "split_result",
]
