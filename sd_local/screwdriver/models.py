"""Pydantic models for Screwdriver job definitions.

A job definition is what the validator API returns for one job of a
screwdriver.yaml: the build image, the ordered steps and the declared
environment.
"""

import json
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, field_validator


class Step(BaseModel):
    """One named command executed inside the build container.

    Attributes:
        name: Step name, unique within a job.
        command: Shell command line.
    """

    model_config = ConfigDict(frozen=True, extra="ignore")

    name: str = Field(min_length=1, description="Step name")
    command: str = Field(description="Shell command executed by the step")


class Job(BaseModel):
    """Definition of a single Screwdriver job.

    Attributes:
        image: Container image reference for the build.
        steps: Ordered step sequence (`commands` in API payloads).
        environment: Job-declared environment variables.
    """

    model_config = ConfigDict(frozen=True, extra="ignore", populate_by_name=True)

    image: str = Field(min_length=1, description="Build container image")
    steps: list[Step] = Field(
        default_factory=list,
        alias="commands",
        description="Ordered steps",
    )
    environment: dict[str, str] = Field(
        default_factory=dict,
        description="Job-declared environment variables",
    )

    @field_validator("environment", mode="before")
    @classmethod
    def stringify_environment(cls, v: object) -> object:
        """Coerce scalar environment values to strings."""
        if isinstance(v, dict):
            return {
                str(k): val if isinstance(val, str) else json.dumps(val)
                for k, val in v.items()
            }
        return v

    @field_validator("steps")
    @classmethod
    def validate_unique_step_names(cls, v: list[Step]) -> list[Step]:
        """Validate step names are unique within the job."""
        seen: set[str] = set()
        for step in v:
            if step.name in seen:
                raise ValueError(f"duplicate step name '{step.name}'")
            seen.add(step.name)
        return v


def load_job_file(path: Path) -> Job:
    """Load and validate a job definition from a JSON file.

    Args:
        path: Path to the JSON file.

    Returns:
        Validated Job instance.

    Raises:
        FileNotFoundError: If the file does not exist.
        json.JSONDecodeError: If the file is not valid JSON.
        pydantic.ValidationError: If data does not match the schema.
    """
    with open(path, encoding="utf-8") as f:
        data = json.load(f)
    return Job.model_validate(data)


__all__ = ["Job", "Step", "load_job_file"]
