"""
Avatar Build Orchestrator

Main entry point for running pipeline files over assets.

Workflow per asset:
1. Each configured pipeline runs in order over the asset's job
2. A ``gltf_pipeline`` loads the document, resolves bones, runs its stages
   and, unless discarded, validates and writes the GLB
3. ``fbx_pipeline`` and ``gltfpack_pipeline`` drive external tools only
4. The chain stops at the first discarded pipeline

Batches of assets run sequentially; one asset's failure never stops the next.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Sequence, Tuple

from loguru import logger

from avatar_build.bridge.bone_resolver import resolve_bones
from avatar_build.bridge.types import load_input_config, load_output_config
from avatar_build.errors import AvatarBuildError
from avatar_build.gltf.document import Document
from avatar_build.pipeline.config import BuildOptions, LodSpec, PipelineConfig, PipelineSpec
from avatar_build.pipeline.external import MeshOptimizerSettings
from avatar_build.pipeline.run import AssetJob, PipelineRun
from avatar_build.pipeline.stages import GltfpackStage, Stage, create_stage


@dataclass
class BatchResult:
    """Outcome of running items sequentially; succeeds when any item succeeded."""

    succeeded: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return bool(self.succeeded)


class Pipeline:
    """
    A named, ordered list of stages.

    The base class is also what an unknown pipeline name resolves to: it
    warns and does nothing.
    """

    def __init__(self, spec: PipelineSpec, options: BuildOptions):
        self.spec = spec
        self.options = options
        self.stages: List[Stage] = [create_stage(name) for name in spec.components]

    @property
    def name(self) -> str:
        return self.spec.name

    def run(self, job: AssetJob) -> bool:
        logger.warning("No Pipeline is connected for '{}'", self.name)
        return True

    def _run_stages(self, run: PipelineRun, stages: Sequence[Stage]) -> None:
        for stage in stages:
            stage(run)


class GltfPipeline(Pipeline):
    """Load the job's GLB, run the document stages, validate and write it."""

    def run(self, job: AssetJob) -> bool:
        logger.info("gltf_pipeline start")
        run = PipelineRun(job=job, options=self.options)
        try:
            if self.options.input_config_path:
                run.input_config = load_input_config(self.options.input_config_path)
            if self.options.output_config_path:
                run.output_config = load_output_config(self.options.output_config_path)

            run.document = Document.load(job.current_input)
            run.bone_map = resolve_bones(run.document, run.input_config)

            self._run_stages(run, self.stages)

            if not run.discarded:
                run.document.validate()
                size = run.document.save(job.output_path)
                job.current_input = job.output_path
                logger.info("Wrote {} ({} bytes)", job.output_path, size)
        except (AvatarBuildError, OSError) as exc:
            run.discard(f"gltf_pipeline failed for {job.current_input}: {exc}")
        except Exception as exc:
            logger.exception("Unexpected error while processing {}", job.current_input)
            run.discard(f"gltf_pipeline failed for {job.current_input}: {exc}")
        finally:
            run.release()

        if run.completed:
            logger.info("gltf_pipeline finished without errors")
        return run.completed


class FbxPipeline(Pipeline):
    """Run converter stages; no document is loaded."""

    def run(self, job: AssetJob) -> bool:
        logger.info("fbx_pipeline start")
        run = PipelineRun(job=job, options=self.options)
        try:
            self._run_stages(run, self.stages)
        except AvatarBuildError as exc:
            run.discard(f"fbx_pipeline failed for {job.current_input}: {exc}")
        finally:
            run.release()

        if run.completed:
            logger.info("fbx_pipeline finished without errors")
        return run.completed


class GltfpackPipeline(Pipeline):
    """
    Run mesh optimizer stages over the job's output.

    With ``lods`` configured, every LOD variant is produced with its own
    simplification ratio and texture scale, written next to the output with
    the variant's suffix; the batch succeeds when any variant succeeded.
    """

    def run(self, job: AssetJob) -> bool:
        logger.info("gltfpack_pipeline start")
        if not self.spec.lods:
            return self._run_job(job, self.stages)

        batch = BatchResult()
        for lod in self.spec.lods:
            lod_job = AssetJob(
                input_path=job.input_path,
                output_path=self.lod_output_path(job.output_path, lod),
                current_input=job.current_input,
            )
            if self._run_job(lod_job, self._lod_stages(lod)):
                batch.succeeded.append(str(lod_job.output_path))
            else:
                batch.failed.append(str(lod_job.output_path))

        if batch.failed:
            logger.warning("{} of {} LOD variants failed", len(batch.failed), len(self.spec.lods))
        return batch.success

    @staticmethod
    def lod_output_path(output_path: Path, lod: LodSpec) -> Path:
        return output_path.with_name(f"{output_path.stem}{lod.suffix}{output_path.suffix}")

    def _lod_stages(self, lod: LodSpec) -> List[Stage]:
        stages = [create_stage(name) for name in self.spec.components]
        for stage in stages:
            if isinstance(stage, GltfpackStage):
                stage.settings = MeshOptimizerSettings(
                    simplify_threshold=lod.simplify,
                    texture_scale=lod.texture_scale,
                )
        return stages

    def _run_job(self, job: AssetJob, stages: Sequence[Stage]) -> bool:
        run = PipelineRun(job=job, options=self.options)
        try:
            self._run_stages(run, stages)
        except AvatarBuildError as exc:
            run.discard(f"gltfpack_pipeline failed for {job.output_path}: {exc}")
        finally:
            run.release()
        return run.completed


PIPELINES = {
    "gltf_pipeline": GltfPipeline,
    "fbx_pipeline": FbxPipeline,
    "gltfpack_pipeline": GltfpackPipeline,
}


def create_pipeline(spec: PipelineSpec, options: BuildOptions) -> Pipeline:
    return PIPELINES.get(spec.name, Pipeline)(spec, options)


class AvatarBuilder:
    """
    Runs a pipeline file over one or many assets.

    Each configured pipeline is one link of the outer chain: once a pipeline
    is discarded, the remaining pipelines of that asset are skipped.
    """

    def __init__(self, config: PipelineConfig, options: Optional[BuildOptions] = None):
        self.config = config
        self.options = options or BuildOptions()

    def build(self, input_path: Path, output_path: Path) -> bool:
        """
        Run every pipeline over one asset.

        Returns:
            True when every pipeline completed undiscarded
        """
        if self.config.name:
            logger.info("Starting pipeline '{}'", self.config.name)
        if self.config.description:
            logger.info("{}", self.config.description)

        job = AssetJob(input_path=Path(input_path), output_path=Path(output_path))
        for spec in self.config.pipelines:
            pipeline = create_pipeline(spec, self.options)
            if not pipeline.run(job):
                logger.error("Pipeline '{}' discarded for {}", spec.name, input_path)
                return False
        return True

    def build_batch(self, pairs: Sequence[Tuple[Path, Path]]) -> BatchResult:
        """Build every ``(input, output)`` pair, continuing past failures."""
        batch = BatchResult()
        for input_path, output_path in pairs:
            if self.build(input_path, output_path):
                batch.succeeded.append(str(output_path))
            else:
                batch.failed.append(str(output_path))
        return batch


def run_pipelines(
    config: PipelineConfig,
    pairs: Sequence[Tuple[Path, Path]],
    options: Optional[BuildOptions] = None,
) -> int:
    """
    Build every asset and return the process exit status.

    Returns:
        0 when every pipeline of every asset completed, 1 otherwise
    """
    batch = AvatarBuilder(config, options).build_batch(pairs)
    logger.info("{} of {} assets built", len(batch.succeeded), len(pairs))
    return 0 if pairs and not batch.failed else 1


__all__ = [
    "AvatarBuilder",
    "BatchResult",
    "FbxPipeline",
    "GltfPipeline",
    "GltfpackPipeline",
    "Pipeline",
    "PipelineRun",
    "create_pipeline",
    "run_pipelines",
]
