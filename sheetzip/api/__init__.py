"""Request and backend payload schemas."""

from .schemas import PageBatch, PageDescriptor, PrepareRequest, RenderOptions, RenderRequest

__all__ = ["PageBatch", "PageDescriptor", "PrepareRequest", "RenderOptions", "RenderRequest"]
