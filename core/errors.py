class DocDistillError(Exception):
    """Base exception class for the docdistill project."""
    pass

class ConfigError(DocDistillError):
    """Raised when there is an error in a configuration file."""
    pass

class BackendUnavailable(DocDistillError):
    """Raised when a model resolves to a backend whose CLI is not installed."""
    pass

class GenerationError(DocDistillError):
    """Base class for failures of a single generation attempt."""
    pass

class LaunchFailure(GenerationError):
    """Raised when the backend process could not be spawned."""
    pass

class GenerationTimeout(GenerationError):
    """Raised when a backend exceeds its wall-clock budget and is killed."""
    pass

class EmptyOutput(GenerationError):
    """Raised when a backend finished without usable output."""
    pass

class IndexWorkerError(DocDistillError):
    """Raised when an indexing task fails or the index worker dies."""
    pass
