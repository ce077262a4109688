# core/errors.py


class ConfigurationError(ValueError):
    """Rejected session configuration. Raised before any engine call."""


class EngineFailure(RuntimeError):
    """The inference engine could not produce logits for the requested position.

    Never retried: by the time this surfaces the engine cache and the token
    history can no longer be assumed to agree.
    """

    def __init__(self, message: str, position: int = -1) -> None:
        super().__init__(message)
        self.position = position
