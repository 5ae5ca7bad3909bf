"""Request pipeline: correlation, logging, metrics and error handling around every handler."""

from meshobs.pipeline.context import InboundRequest, PipelineResponse, RequestContext
from meshobs.pipeline.results import Fails, FailureKind, HandlerResult, Ok, OutcomeClass
from meshobs.pipeline.runner import Pipeline

__all__ = [
    "Fails",
    "FailureKind",
    "HandlerResult",
    "InboundRequest",
    "Ok",
    "OutcomeClass",
    "Pipeline",
    "PipelineResponse",
    "RequestContext",
]
