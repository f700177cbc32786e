"""API route handlers."""

from .events import router as events_router
from .deliveries import router as deliveries_router
from .stats import router as stats_router
