from typing import Optional

from fleet_guardian.models import Geofence
from fleet_guardian.utils.geo import has_coordinates, haversine_m
from fleet_guardian.utils.variables import DEFAULT_GEOFENCE_RADIUS_M

ENTER = "enter"
EXIT = "exit"
BOTH = "both"


def inside(fence: Geofence, lat: Optional[float], lon: Optional[float]) -> Optional[bool]:
    """Point-in-circle; None when the point has no usable fix."""
    if not has_coordinates(lat, lon):
        return None
    radius = fence.radius_m or DEFAULT_GEOFENCE_RADIUS_M
    return haversine_m(fence.latitude, fence.longitude, lat, lon) <= radius


def crossing(fence: Geofence, prev, curr) -> Optional[str]:
    """"enter" / "exit" when the two samples straddle the boundary and the fence wants it."""
    was_in = inside(fence, prev.latitude, prev.longitude)
    is_in = inside(fence, curr.latitude, curr.longitude)
    if was_in is None or is_in is None or was_in == is_in:
        return None

    direction = ENTER if is_in else EXIT
    if (fence.trigger_on or BOTH) not in (direction, BOTH):
        return None
    return direction
