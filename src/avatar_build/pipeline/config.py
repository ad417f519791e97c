"""
Pipeline configuration models.

A pipeline file names an ordered list of pipelines, each an ordered list of
stage identifiers; ``gltfpack_pipeline`` entries may also list LOD variants.
"""

from pathlib import Path
from typing import List, Optional

from pydantic import BaseModel, Field, ValidationError

from avatar_build.bridge.types import load_json_file
from avatar_build.errors import ConfigError


class LodSpec(BaseModel):
    """One reduced-detail variant written next to the main output."""

    suffix: str
    simplify: float = Field(default=0.7, ge=0.0, le=1.0)
    texture_scale: float = Field(default=1.0, gt=0.0, le=1.0)


class PipelineSpec(BaseModel):
    name: str
    components: List[str] = Field(default_factory=list)
    lods: List[LodSpec] = Field(default_factory=list)


class PipelineConfig(BaseModel):
    """Parsed pipeline file."""

    name: str = ""
    description: str = ""
    pipelines: List[PipelineSpec] = Field(default_factory=list)


class BuildOptions(BaseModel):
    """Per-invocation settings threaded through every pipeline and stage."""

    input_config_path: Optional[Path] = None
    output_config_path: Optional[Path] = None
    fbx2gltf_executable: Path = Path("FBX2glTF")
    gltfpack_executable: Path = Path("gltfpack")
    verbose: bool = False
    debug: bool = False


def load_pipeline_config(path: Path) -> PipelineConfig:
    """
    Load and validate a pipeline file.

    Raises:
        ConfigError: if the file cannot be read or does not match the schema
    """
    try:
        return PipelineConfig.model_validate(load_json_file(path))
    except ValidationError as exc:
        raise ConfigError(f"Invalid pipeline config {path}: {exc}") from exc
