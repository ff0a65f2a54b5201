from .interfaces import IVMRepository
from .memory.memory_vm_repository import InMemoryVMRepository
