from .memory_vm_repository import InMemoryVMRepository
