"""Utils package for the campaign dispatch engine."""
from .logging_utils import (
    setup_logging,
    retry_with_backoff,
)

__all__ = [
    'setup_logging',
    'retry_with_backoff',
]
