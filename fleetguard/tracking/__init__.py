"""Per (node group, service) record of credential adoption."""

from fleetguard.tracking.store import (
    ServiceTrackingRecord,
    ServiceTrackingStore,
    TrackingDataError,
    tracking_record_name,
)

__all__ = [
    "ServiceTrackingRecord",
    "ServiceTrackingStore",
    "TrackingDataError",
    "tracking_record_name",
]
