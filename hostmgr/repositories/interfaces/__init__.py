from .vm import IVMRepository
