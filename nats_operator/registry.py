import threading

from .errors import DuplicateRegistrationError


class ControllerRegistry:
    """
    Concurrency-safe mapping of (namespace, name) to cluster controller.

    At most one controller is registered for each key at any instant.
    """
    def __init__(self):
        self._lock = threading.Lock()
        self._controllers = {}

    def insert(self, key, controller):
        """
        Registers the controller for the key.

        Raises DuplicateRegistrationError if the key is already registered.
        """
        with self._lock:
            if key in self._controllers:
                raise DuplicateRegistrationError(key)
            self._controllers[key] = controller

    def get(self, key):
        with self._lock:
            return self._controllers.get(key)

    def remove(self, key, controller = None):
        """
        Removes and returns the controller for the key, or None if not registered.

        If a controller is given, the entry is only removed if it is that controller.
        """
        with self._lock:
            current = self._controllers.get(key)
            if current is None or (controller is not None and current is not controller):
                return None
            return self._controllers.pop(key)

    def snapshot(self):
        """
        Returns a list of the currently registered controllers.
        """
        with self._lock:
            return list(self._controllers.values())

    def __contains__(self, key):
        with self._lock:
            return key in self._controllers

    def __len__(self):
        with self._lock:
            return len(self._controllers)
