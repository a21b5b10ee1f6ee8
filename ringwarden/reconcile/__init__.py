from .provisioner import (
    CommandProvisioner as CommandProvisioner,
    LogOnlyProvisioner as LogOnlyProvisioner,
    Provisioner as Provisioner,
    ProvisioningHandle as ProvisioningHandle,
    ProvisioningStatus as ProvisioningStatus,
)
from .reconciler import (
    CapacityState as CapacityState,
    CapacityTransition as CapacityTransition,
    Reconciler as Reconciler,
)
