"""Pydantic schemas for response bodies."""
from pydantic import BaseModel
from typing import List, Optional


class EndpointInfo(BaseModel):
    """One entry of the endpoint listing."""
    path: str
    method: str
    description: str


class HealthResponse(BaseModel):
    """Root endpoint response."""
    name: str
    version: str
    status: str = "ok"
    endpoints: List[EndpointInfo]


class MetadataResponse(BaseModel):
    """Image URLs found on a page, best first."""
    images: List[str]


class DiffResponse(BaseModel):
    """Diff endpoint response; images are base64 data URIs."""
    diffScore: float  # Percentage of differing pixels, 0-100
    diffImage: str
    imageA: str
    imageB: str
    width: int
    height: int
    diffPixels: int


class ErrorResponse(BaseModel):
    """Error body shared by every failure."""
    error: str
    message: Optional[str] = None


class NotFoundResponse(BaseModel):
    """Unknown path."""
    error: str = "Not found"
    pathname: str
    availableEndpoints: List[str]
