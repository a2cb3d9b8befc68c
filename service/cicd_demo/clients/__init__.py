"""Clients for external services"""

from .external import ExternalRequest, ExternalServiceClient

__all__ = ["ExternalRequest", "ExternalServiceClient"]
