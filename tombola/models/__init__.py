from .base import Base

# import models so Alembic/autoloaders can discover mappers
from .draw import (  # noqa: F401
    DRAW_STATUS_ID,
    DrawRecord,
    DrawStatus,
    PendingDrawRecord,
)

__all__ = [
    "Base",
    "DRAW_STATUS_ID",
    "DrawRecord",
    "DrawStatus",
    "PendingDrawRecord",
]
