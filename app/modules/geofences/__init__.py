# Geofence module
from app.modules.geofences.models import Geofence, GeofenceState

__all__ = ["Geofence", "GeofenceState"]
