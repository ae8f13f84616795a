"""
Exception types raised inside the pipeline.

Stage code raises these; the controller catches everything at its boundary
and turns it into a failed job.
"""


class PipelineError(Exception):
    """Base class for pipeline failures."""


class ContinuityValidationError(PipelineError):
    """A proposed continuity group could not be used as-is."""


class GenerationError(PipelineError):
    """A generative call (image, clip, audio, text) failed."""


class RenderError(PipelineError):
    """The renderer reported failure or never finished within the poll budget."""


class PublishError(PipelineError):
    """The social publisher rejected or failed a post."""


class JobNotFoundError(PipelineError):
    pass


class JobLockedError(PipelineError):
    """Another worker holds the lease for this job."""
