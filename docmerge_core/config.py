"""
Merge Configuration
Ceilings, formatting defaults and collaborator hooks for one merge operation.
"""

import os
import logging
from typing import Callable, Optional
from dataclasses import dataclass

logger = logging.getLogger(__name__)

DEFAULT_MAX_INLINE_ITERATIONS = 20
DEFAULT_MAX_SECTION_ROWS = 100
DEFAULT_CURRENCY_SYMBOL = "$"


@dataclass
class MergeConfig:
    """Settings shared by every stage of the merge pipeline"""
    max_inline_iterations: int = DEFAULT_MAX_INLINE_ITERATIONS   # Inline IF passes per text blob
    max_section_rows: int = DEFAULT_MAX_SECTION_ROWS             # Warn above this many records
    currency_symbol: str = DEFAULT_CURRENCY_SYMBOL
    image_handler: Optional[Callable] = None                     # Receives List[PendingImage]

    @classmethod
    def from_env(cls, image_handler: Optional[Callable] = None) -> "MergeConfig":
        """
        Build a config from DOCMERGE_* environment variables.

        Args:
            image_handler: Optional deferred image pass

        Returns:
            MergeConfig with environment overrides applied
        """
        return cls(
            max_inline_iterations=_env_int("DOCMERGE_MAX_INLINE_ITERATIONS", DEFAULT_MAX_INLINE_ITERATIONS),
            max_section_rows=_env_int("DOCMERGE_MAX_SECTION_ROWS", DEFAULT_MAX_SECTION_ROWS),
            currency_symbol=os.environ.get("DOCMERGE_CURRENCY_SYMBOL", DEFAULT_CURRENCY_SYMBOL),
            image_handler=image_handler,
        )


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = int(raw)
    except ValueError:
        logger.warning("Ignoring %s=%r: not an integer", name, raw)
        return default
    if value < 1:
        logger.warning("Ignoring %s=%r: must be positive", name, raw)
        return default
    return value
