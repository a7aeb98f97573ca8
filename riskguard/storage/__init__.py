from riskguard.storage.base import Storage
from riskguard.storage.memory import MemoryStorage

__all__ = ["Storage", "MemoryStorage"]
