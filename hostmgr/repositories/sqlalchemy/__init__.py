from .sqlalchemy_vm_repository import SqlalchemyVMRepository
