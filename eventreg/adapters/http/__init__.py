"""HTTP adapters - Client for the registration REST API."""

from .client import HttpRegistrationGateway

__all__ = ["HttpRegistrationGateway"]
