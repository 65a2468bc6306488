"""Pydantic schemas for API request/response models."""
from .envelope import ApiResponse, ResponseMeta

__all__ = ["ApiResponse", "ResponseMeta"]
