"""
Shared building blocks for the verdict marketplace core.

- Settings loaded from the environment
- Error taxonomy shared by the ledger, router and reconciliation engine
- Identifier and amount validation
- Timeouts, bounded retries and fire-and-forget notifications
"""

from .config import Settings, get_settings
from .errors import ServiceError

__all__ = [
    "Settings",
    "get_settings",
    "ServiceError",
]
