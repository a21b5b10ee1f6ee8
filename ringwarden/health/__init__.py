from .hysteresis import evaluate_probe as evaluate_probe
from .prober import HealthProber as HealthProber
from .probes import (
    HTTPHealthCheck as HTTPHealthCheck,
    ProbeCheck as ProbeCheck,
    ProbeConfig as ProbeConfig,
    ProbeResponse as ProbeResponse,
    ProbeResult as ProbeResult,
)
