"""Pydantic models for project configuration and generated job data."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from delivery_engine.errors import DeliveryError, ErrorKind

# ---------------------------------------------------------------------------
# Project configuration (.delivery/config.json)
# ---------------------------------------------------------------------------


class JobDispatch(BaseModel):
    """Job dispatch section: a version marker plus per-phase node filters."""

    model_config = ConfigDict(extra="allow")

    version: str
    filters: dict[str, list[dict[str, list[str]]]] | None = None


class ProjectConfig(BaseModel):
    """Canonical ("v2") project configuration.

    Unknown top-level keys are kept: build cookbooks read their own settings
    from the same document.
    """

    model_config = ConfigDict(extra="allow")

    version: str
    build_cookbook: dict[str, Any]
    skip_phases: list[str] | None = None
    build_nodes: dict[str, list[str]] | None = None
    job_dispatch: JobDispatch | None = None
    dependencies: list[str] | None = None

    def skips(self, phase: str) -> bool:
        return phase in (self.skip_phases or [])

    def build_cookbook_get(self, key: str) -> str:
        """Return a string field of ``build_cookbook``."""
        if key not in self.build_cookbook:
            raise DeliveryError(
                ErrorKind.MISSING_BUILD_COOKBOOK_FIELD,
                f"build_cookbook is missing the '{key}' field",
            )
        value = self.build_cookbook[key]
        if not isinstance(value, str):
            raise DeliveryError(
                ErrorKind.EXPECTED_JSON_STRING,
                f"build_cookbook field '{key}' must be a string, got {value!r}",
            )
        return value

    def build_cookbook_name(self) -> str:
        if "name" not in self.build_cookbook:
            raise DeliveryError(ErrorKind.MISSING_BUILD_COOKBOOK_NAME)
        return self.build_cookbook_get("name")

    def to_document(self) -> dict[str, Any]:
        """Plain JSON-ready dict, custom attributes included."""
        return self.model_dump(mode="json", exclude_none=True)


class ProjectConfigV1(BaseModel):
    """Legacy ("v1") project configuration: the cookbook is a single string."""

    model_config = ConfigDict(extra="allow")

    version: str
    build_cookbook: str
    skip_phases: list[str] | None = None
    build_nodes: dict[str, list[str]] | None = None


# ---------------------------------------------------------------------------
# Job data (chef/dna.json)
# ---------------------------------------------------------------------------


class Change(BaseModel):
    """The change a job is running against."""

    model_config = ConfigDict(frozen=True)

    enterprise: str
    organization: str
    project: str
    pipeline: str
    stage: str
    phase: str
    git_url: str
    sha: str = ""
    patchset_branch: str = ""
    change_id: str = ""
    patchset_number: str = "latest"


class BuilderCompat(BaseModel):
    """Legacy ``delivery_builder`` block still read by older build cookbooks."""

    workspace: str
    repo: str
    cache: str
    build_id: str
    build_user: str


class JobTop(BaseModel):
    workspace: dict[str, str]
    change: Change
    config: dict[str, Any] = Field(default_factory=dict)


class JobData(BaseModel):
    """Document handed to the phase runner via ``chef-client -j``."""

    delivery: JobTop
    delivery_builder: BuilderCompat
