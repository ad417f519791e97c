from typing import Any, Dict, Optional

from pydantic import BaseModel, Field, field_validator

from avatar_build.bridge.types import InputConfig
from avatar_build.pipeline.config import PipelineConfig


class BuildRequest(BaseModel):
    source_uri: str = Field(description="S3 URI or absolute local path to the source asset (FBX or GLB)")
    output_uri: Optional[str] = Field(
        default=None,
        description="Optional S3 URI or local directory where the built files should be stored",
    )
    pipeline: PipelineConfig = Field(description="Pipelines to run over the asset")
    input_config: Optional[InputConfig] = Field(
        default=None,
        description="Bone names, search switches and poses",
    )
    output_config: Optional[Dict[str, Any]] = Field(
        default=None,
        description="VRM meta, material defaults and overrides",
    )
    output_name: str = Field(
        default="",
        description="Output file name; defaults to the source name with a .vrm extension",
    )

    @field_validator("source_uri")
    @classmethod
    def validate_source_uri(cls, value: str) -> str:
        if not value:
            msg = "source_uri must not be empty"
            raise ValueError(msg)
        return value


class BuildArtifact(BaseModel):
    uri: str
    content_type: str


class BuildResponse(BaseModel):
    status: str
    artifacts: list[BuildArtifact]
    logs: Optional[list[str]] = None
