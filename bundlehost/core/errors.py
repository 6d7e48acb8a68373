"""Exception hierarchy for bundlehost."""


class BundleHostError(Exception):
    """Base class for all bundlehost errors."""


class BundleLoadError(BundleHostError):
    """Raised when a plugin path is unusable or a plugin module fails to import."""


class BundleInstantiationError(BundleHostError):
    """Raised when a Bundle class is found but cannot be constructed."""


class ExecutionTimeoutError(BundleHostError):
    """Raised internally when a bundle invocation exceeds its time bound."""

    def __init__(self, bundle_id: str, event_name: str, timeout: float):
        self.bundle_id = bundle_id
        self.event_name = event_name
        self.timeout = timeout
        super().__init__(
            f"Bundle {bundle_id!r} timed out after {timeout}s handling {event_name!r}"
        )


class ExecutionFaultError(BundleHostError):
    """Raised internally when a bundle invocation raises or returns garbage."""

    def __init__(self, bundle_id: str, event_name: str, original: BaseException):
        self.bundle_id = bundle_id
        self.event_name = event_name
        self.original = original
        super().__init__(f"Bundle {bundle_id!r} failed handling {event_name!r}: {original}")


class NotFoundError(BundleHostError):
    """Raised when a directly requested bundle or instance does not exist."""


class SerializationError(BundleHostError):
    """Raised when an instance cannot be serialized or deserialized."""


class StorageConfigurationError(BundleHostError):
    """Raised when storage settings fail validation.

    Attributes:
        errors: Every validation problem found, in discovery order.
    """

    def __init__(self, errors: list[str]):
        self.errors = list(errors)
        super().__init__("; ".join(self.errors) or "Invalid storage configuration")
