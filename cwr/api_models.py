from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field


class RunOptions(BaseModel):
    env: list[str] = Field(default_factory=list, description="Environment entries, KEY=VALUE")
    entry_point_args: list[str] = Field(default_factory=list, description="Arguments passed to the entrypoint")
    options: dict[str, Any] = Field(default_factory=dict, description="Extra container create options")
    host_options: dict[str, Any] = Field(default_factory=dict, description="Binds / NetworkMode / AutoRemove")


class ComposeOptions(BaseModel):
    compose_file: list[str] = Field(..., description="Compose document, one entry per line")


class CredentialsModel(BaseModel):
    username: str = ""
    password: str = ""


class ConfigureRequest(BaseModel):
    image_name: str = Field(..., description="Image repository, e.g. ghcr.io/acme/worker")
    repo_digest: str = Field(..., description="Content digest pinning the image, e.g. sha256:...")
    run_options: RunOptions | None = None
    compose_options: ComposeOptions | None = None
    run_once: bool = Field(False, description="Start at most once per digest, across restarts")
    download_only: bool = Field(False, description="Pull the image but never create containers")
    credentials: CredentialsModel | None = None

    def attributes(self) -> dict[str, Any]:
        return self.model_dump(exclude_none=True)
