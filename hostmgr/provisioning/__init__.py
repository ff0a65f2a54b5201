from .exceptions import ProvisioningBackendError
from .interfaces import ProvisioningBackend
from .memory_backend import InMemoryBackend
from .vagrant_backend import VagrantBackend
