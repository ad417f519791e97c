"""
Pipelines

Sequential drivers for the closed set of build stages.
"""

from avatar_build.pipeline.config import BuildOptions, PipelineConfig, load_pipeline_config
from avatar_build.pipeline.orchestrator import AvatarBuilder, run_pipelines
from avatar_build.pipeline.run import AssetJob, PipelineRun
from avatar_build.pipeline.stages import StageName

__all__ = [
    "AssetJob",
    "AvatarBuilder",
    "BuildOptions",
    "PipelineConfig",
    "PipelineRun",
    "StageName",
    "load_pipeline_config",
    "run_pipelines",
]
