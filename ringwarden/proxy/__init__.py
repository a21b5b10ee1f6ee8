from .forwarder import (
    BackendForwarder as BackendForwarder,
    build_upstream_request as build_upstream_request,
)
from .load_balancer import LoadBalancerFront as LoadBalancerFront
