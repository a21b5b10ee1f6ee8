from .backend import (
    Backend as Backend,
    BackendHealth as BackendHealth,
    HealthTransition as HealthTransition,
    RegistrySnapshot as RegistrySnapshot,
)
