from .balancer_config import (
    BackendSpec as BackendSpec,
    BalancerConfig as BalancerConfig,
)
from .env import Env as Env
from .load_env import load_env as load_env
from .time_parser import TimeParser as TimeParser
