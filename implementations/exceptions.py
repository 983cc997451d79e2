class LockError(Exception):
    pass


class BackendUnavailableError(LockError):
    def __init__(self, name, reason):
        super().__init__(f"Backend unavailable for lock {name}: {reason}")
        self.name = name
        self.reason = reason


class LockAcquisitionError(LockError):
    def __init__(self, name, status):
        super().__init__(f"Could not acquire lock {name}: {status.value}")
        self.name = name
        self.status = status


class ConfigurationError(LockError):
    pass


class UnrecoverableMutexError(LockError):
    def __init__(self, name):
        super().__init__(f"Cannot release lock of mutex {name}")
        self.name = name


class DuplicateLockImplementorError(LockError):
    def __init__(self, implementor):
        super().__init__(f"Lock implementor {implementor} is already registered")
        self.implementor = implementor


class UnknownLockImplementorError(LockError):
    def __init__(self, implementor):
        super().__init__(f"Lock implementor {implementor} is not registered")
        self.implementor = implementor
