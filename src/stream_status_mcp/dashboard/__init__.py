"""Dashboard HTTP API."""

from .app import UpdateStreamModel, create_dashboard_app
from .server import DashboardConfig, DashboardInfo, DashboardServer

__all__ = [
    "DashboardConfig",
    "DashboardInfo",
    "DashboardServer",
    "UpdateStreamModel",
    "create_dashboard_app",
]
