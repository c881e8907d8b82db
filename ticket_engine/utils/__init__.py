"""
Utility functions
"""
from ticket_engine.utils.logger import get_logger, setup_logger
from ticket_engine.utils.validators import (
    validate_ticket_id,
    validate_ticket_ids,
    validate_delta,
    validate_merge_resolutions,
    validate_merge_selection,
)

__all__ = [
    "get_logger",
    "setup_logger",
    "validate_ticket_id",
    "validate_ticket_ids",
    "validate_delta",
    "validate_merge_selection",
    "validate_merge_resolutions",
]
