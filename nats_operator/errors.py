class ConnectivityError(Exception):
    """
    Raised when the Kubernetes API cannot be reached.
    """


class RegistrationError(Exception):
    """
    Raised when the custom resource definition cannot be registered.
    """


class NameConflictError(RegistrationError):
    """
    Raised when Kubernetes refuses the names of the custom resource definition.
    """
    def __init__(self, crd_name, reason):
        super().__init__(f"name conflict for {crd_name}: {reason}")
        self.crd_name = crd_name
        self.reason = reason


class ObjectCreateError(Exception):
    """
    Raised when an object managed for a cluster cannot be created or applied.
    """
    def __init__(self, kind, name, message):
        super().__init__(f"failed to create {kind}/{name}: {message}")
        self.kind = kind
        self.name = name


class ObjectDeleteError(Exception):
    """
    Raised when an object managed for a cluster cannot be deleted.
    """
    def __init__(self, kind, name, message):
        super().__init__(f"failed to delete {kind}/{name}: {message}")
        self.kind = kind
        self.name = name


class DuplicateRegistrationError(Exception):
    """
    Raised when a controller is already registered for a cluster.
    """
    def __init__(self, key):
        namespace, name = key
        super().__init__(f"controller already registered for {namespace}/{name}")
        self.key = key


class ShutdownRequested(Exception):
    """
    Cancellation reason used when the operator is shut down.
    """


class ControllerStopped(Exception):
    """
    Cancellation reason used when a single cluster controller is stopped.
    """


class ReloaderError(Exception):
    """
    Raised when the reloader cannot locate or signal the NATS server.
    """
