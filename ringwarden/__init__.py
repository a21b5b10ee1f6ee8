from .balancer import Balancer as Balancer
from .env import BalancerConfig as BalancerConfig
from .env import Env as Env
from .models import Backend as Backend
from .models import BackendHealth as BackendHealth
