from .pipeline import Pipeline, PipelineError

__all__ = ["Pipeline", "PipelineError"]
