from .vm import VMRecord
from .snapshot import SnapshotRecord
