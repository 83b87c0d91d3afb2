"""Upstream API access: transport, request governor and endpoints."""

from .client import FLEXI_COLUMN_PATTERN, OsmClient
from .governor import ApiGovernor, ApiRequest, GovernorStats, Priority
from .transport import ApiResponse, HttpTransport

__all__ = [
    "ApiGovernor",
    "ApiRequest",
    "ApiResponse",
    "FLEXI_COLUMN_PATTERN",
    "GovernorStats",
    "HttpTransport",
    "OsmClient",
    "Priority",
]
