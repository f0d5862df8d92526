"""Screwdriver.cd API access and job models.

This module handles:
- Pydantic models for job definitions returned by the API
- Fetching JWTs and validated job definitions over HTTP
"""

from sd_local.screwdriver.models import Job, Step

__all__ = ["Job", "Step"]
