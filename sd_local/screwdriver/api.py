"""Screwdriver API client.

This module handles:
- Exchanging a user API token for a build JWT
- Validating a local screwdriver.yaml and extracting one job definition
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import httpx
from pydantic import ValidationError

from sd_local.screwdriver.models import Job

logger = logging.getLogger(__name__)

API_VERSION = "v4"

# Timeout for API requests (seconds)
REQUEST_TIMEOUT = 30


class APIError(Exception):
    """Raised when a Screwdriver API request fails."""

    def __init__(self, message: str, code: str = "api_error") -> None:
        """Initialize APIError.

        Args:
            message: Error description.
            code: Error code for structured error handling.
        """
        super().__init__(message)
        self.code = code


class ScrewdriverAPI:
    """Minimal client for the endpoints sd-local needs.

    Args:
        api_url: Base API URL without the version suffix.
        token: User API token.
        client: Optional HTTPX client (one is created if not provided).
    """

    def __init__(
        self,
        api_url: str,
        token: str,
        client: httpx.Client | None = None,
    ) -> None:
        self.api_url = api_url.rstrip("/")
        self.token = token
        self._client = client or httpx.Client(follow_redirects=True)
        self._jwt: str | None = None

    def _url(self, path: str) -> str:
        return f"{self.api_url}/{API_VERSION}/{path.lstrip('/')}"

    def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        url = self._url(path)
        logger.debug("%s %s", method, url)
        try:
            response = self._client.request(
                method, url, timeout=REQUEST_TIMEOUT, **kwargs
            )
            response.raise_for_status()
            return response.json()

        except httpx.HTTPStatusError as e:
            raise APIError(
                f"HTTP error from {url}: {e.response.status_code} {e.response.reason_phrase}",
                code="http_error",
            ) from e
        except httpx.TimeoutException as e:
            raise APIError(f"Timeout requesting {url}", code="timeout") from e
        except httpx.RequestError as e:
            raise APIError(
                f"Network error requesting {url}: {e}",
                code="network_error",
            ) from e
        except ValueError as e:
            raise APIError(
                f"Invalid JSON response from {url}",
                code="invalid_response",
            ) from e

    def jwt(self) -> str:
        """Return a build JWT, fetching it on first use.

        Raises:
            APIError: If the token exchange fails.
        """
        if self._jwt is None:
            data = self._request(
                "GET", "auth/token", params={"api_token": self.token}
            )
            token = data.get("token") if isinstance(data, dict) else None
            if not token:
                raise APIError(
                    "Token response did not contain a JWT",
                    code="invalid_response",
                )
            self._jwt = token
        return self._jwt

    def job(self, job_name: str, yaml_path: Path) -> Job:
        """Validate a screwdriver.yaml and return one of its jobs.

        Args:
            job_name: Name of the job to run.
            yaml_path: Path to screwdriver.yaml.

        Returns:
            Job definition for `job_name`.

        Raises:
            FileNotFoundError: If the YAML file does not exist.
            APIError: If validation fails or the job is not defined.
        """
        content = yaml_path.read_text(encoding="utf-8")
        data = self._request(
            "POST",
            "validator",
            json={"yaml": content},
            headers={"Authorization": f"Bearer {self.jwt()}"},
        )

        errors = data.get("errors") or []
        if errors:
            messages = "; ".join(
                e.get("message", str(e)) if isinstance(e, dict) else str(e)
                for e in errors
            )
            raise APIError(
                f"screwdriver.yaml is invalid: {messages}",
                code="validation_error",
            )

        jobs = data.get("jobs") or {}
        entries = jobs.get(job_name)
        if not entries:
            raise APIError(
                f"Job '{job_name}' is not defined in {yaml_path}",
                code="job_not_found",
            )

        try:
            return Job.model_validate(entries[0])
        except ValidationError as e:
            raise APIError(
                f"Invalid job definition for '{job_name}': {e}",
                code="validation_error",
            ) from e

    def close(self) -> None:
        """Close the underlying HTTP client."""
        self._client.close()


__all__ = ["API_VERSION", "APIError", "ScrewdriverAPI"]
