"""Per-asset run state shared by the stages of one pipeline."""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from loguru import logger

from avatar_build.bridge.types import BoneMap, InputConfig, OutputConfig
from avatar_build.gltf.document import Document
from avatar_build.pipeline.config import BuildOptions


@dataclass
class AssetJob:
    """
    One ``(input, output)`` pair of a build.

    ``current_input`` starts at ``input_path`` and advances to the file
    produced by a converter pipeline, so later pipelines read it.
    """

    input_path: Path
    output_path: Path
    current_input: Optional[Path] = None

    def __post_init__(self):
        if self.current_input is None:
            self.current_input = self.input_path


@dataclass
class PipelineRun:
    """
    State of one pipeline over one asset: ``Running`` until it is either
    discarded or completes.

    The run owns its document; ``release`` drops it exactly once.
    """

    job: AssetJob
    options: BuildOptions
    document: Optional[Document] = None
    bone_map: BoneMap = field(default_factory=BoneMap)
    input_config: Optional[InputConfig] = None
    output_config: Optional[OutputConfig] = None
    discarded: bool = False
    released: bool = False

    def discard(self, reason: str) -> None:
        if not self.discarded:
            logger.error(reason)
        self.discarded = True

    def release(self) -> None:
        if self.released:
            return
        self.document = None
        self.released = True

    @property
    def completed(self) -> bool:
        return self.released and not self.discarded
