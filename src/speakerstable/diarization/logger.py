from __future__ import annotations

from ..logging_utils import get_logger

logger = get_logger("diarization")

__all__ = ["logger"]
