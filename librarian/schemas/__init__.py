"""Pydantic schemas for provisioning requests and results."""

from .provisioning_schema import CreationOptions, ProvisionedCredential

__all__ = ["CreationOptions", "ProvisionedCredential"]
