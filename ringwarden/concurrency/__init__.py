from .rw_lock import ReadWriteLock as ReadWriteLock
