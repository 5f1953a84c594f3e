"""Pipeline error hierarchy."""


class PipelineError(Exception):
    """Base class for subtitle pipeline errors."""

    pass


class InvalidStateError(PipelineError):
    """Operation attempted in the wrong lifecycle state."""

    pass


class ModelLoadError(PipelineError):
    """An engine could not bind its model."""

    pass


class EngineError(PipelineError):
    """A transcribe, translate or synthesize call failed."""

    pass


class ModelNotLoadedError(EngineError):
    """Engine called without a bound model."""

    pass
