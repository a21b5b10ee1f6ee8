from .backend_registry import BackendRegistry as BackendRegistry
from .in_flight_tracker import InFlightTracker as InFlightTracker
