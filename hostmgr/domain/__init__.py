from .vm import VM, VMConfig, VMSpec, VMStatus, NetworkConfig, ConfigUpdate, utcnow
from .snapshot import Snapshot
from .pagination import Pagination
