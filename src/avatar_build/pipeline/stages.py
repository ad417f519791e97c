"""
Pipeline Stages

The closed set of stages a pipeline can run. Every stage checks the run's
discard flag first and does nothing once it is set; failures are reported by
discarding the run.
"""

from enum import Enum
from typing import Dict, Optional, Type

from loguru import logger

from avatar_build.bridge.buffers import upcast_joints
from avatar_build.bridge.humanoid import build_vrm_extension, remove_vrm_extension
from avatar_build.bridge.overrides import apply_material_overrides
from avatar_build.bridge.pose_reset import PoseReset
from avatar_build.bridge.skin_rebinder import SkinRebinder, capture_joint_only_binds
from avatar_build.bridge.transform_baker import TransformBaker
from avatar_build.bridge.types import SearchConfig
from avatar_build.bridge.validator import validate_humanoid
from avatar_build.pipeline.external import (
    MeshOptimizerSettings,
    convert_images_to_png,
    fbx_output_path,
    run_fbx2gltf,
    run_gltfpack,
)
from avatar_build.pipeline.run import PipelineRun


class StageName(str, Enum):
    """Stage identifiers accepted in pipeline files."""

    GLB_Z_REVERSE = "glb_z_reverse"
    GLB_TRANSFORMS_APPLY = "glb_transforms_apply"
    GLB_T_POSE = "glb_T_pose"
    GLB_FIX_ROLL = "glb_fix_roll"
    GLB_JPEG_TO_PNG = "glb_jpeg_to_png"
    GLB_OVERRIDES = "glb_overrides"
    VRM0_FIX_JOINT_BUFFER = "vrm0_fix_joint_buffer"
    VRM0_DEFAULT_EXTENSIONS = "vrm0_default_extensions"
    VRM0_REMOVE_EXTENSIONS = "vrm0_remove_extensions"
    FBX2GLTF_EXECUTE = "fbx2gltf_execute"
    GLTFPACK_EXECUTE = "gltfpack_execute"


class Stage:
    """Base stage: skips discarded runs, then calls ``process``."""

    name: str = "stage"

    def __call__(self, run: PipelineRun) -> None:
        if run.discarded:
            return
        logger.info(self.name)
        self.process(run)

    def process(self, run: PipelineRun) -> None:
        raise NotImplementedError


class DocumentStage(Stage):
    """Stage working on the loaded document."""

    def process(self, run: PipelineRun) -> None:
        if run.document is None:
            run.discard(f"{self.name}: no document loaded")
            return
        self.process_document(run)

    def process_document(self, run: PipelineRun) -> None:
        raise NotImplementedError


class NoopStage(Stage):
    """Placeholder for an unknown stage name."""

    def __init__(self, name: str):
        self.name = name

    def __call__(self, run: PipelineRun) -> None:
        if run.discarded:
            return
        logger.warning("No Component is found for '{}'", self.name)

    def process(self, run: PipelineRun) -> None:
        pass


class ZReverseStage(DocumentStage):
    name = StageName.GLB_Z_REVERSE.value

    def process_document(self, run: PipelineRun) -> None:
        TransformBaker().reverse_z(run.document)


class TransformsApplyStage(DocumentStage):
    name = StageName.GLB_TRANSFORMS_APPLY.value

    def process_document(self, run: PipelineRun) -> None:
        TransformBaker().bake_transforms(run.document, run.bone_map)


class TPoseStage(DocumentStage):
    """Apply the configured T-pose and rebind the skin to it."""

    name = StageName.GLB_T_POSE.value

    def process_document(self, run: PipelineRun) -> None:
        search = run.input_config.config if run.input_config else SearchConfig()
        pose = run.input_config.pose(search.t_pose) if run.input_config else None

        inverse_binds = capture_joint_only_binds(run.document) if search.joint_only else None
        PoseReset().apply_pose(run.document, run.bone_map, pose)
        SkinRebinder().rebind(run.document, joint_only=search.joint_only, inverse_binds=inverse_binds)
        TransformBaker().recompute_inverse_bind_matrices(run.document)


class FixRollStage(DocumentStage):
    name = StageName.GLB_FIX_ROLL.value

    def process_document(self, run: PipelineRun) -> None:
        search = run.input_config.config if run.input_config else SearchConfig()
        pose = run.input_config.pose(search.roll_pose) if run.input_config else None
        if PoseReset().fix_roll(run.document, run.bone_map, pose):
            TransformBaker().recompute_inverse_bind_matrices(run.document)


class JpegToPngStage(DocumentStage):
    name = StageName.GLB_JPEG_TO_PNG.value

    def process_document(self, run: PipelineRun) -> None:
        converted = convert_images_to_png(run.document)
        logger.debug("Converted {} JPEG images", converted)


class OverridesStage(DocumentStage):
    name = StageName.GLB_OVERRIDES.value

    def process_document(self, run: PipelineRun) -> None:
        matched = apply_material_overrides(run.document, run.output_config)
        logger.debug("Material overrides matched {} materials", matched)


class FixJointBufferStage(DocumentStage):
    name = StageName.VRM0_FIX_JOINT_BUFFER.value

    def process_document(self, run: PipelineRun) -> None:
        upcast_joints(run.document)


class DefaultExtensionsStage(DocumentStage):
    """Synthesize the VRM extension, then reject avatars that fail validation."""

    name = StageName.VRM0_DEFAULT_EXTENSIONS.value

    def process_document(self, run: PipelineRun) -> None:
        build_vrm_extension(run.document, run.bone_map, run.output_config)
        report = validate_humanoid(run.document, run.bone_map)
        if not report.passed:
            run.discard(f"{self.name}: {'; '.join(report.errors)}")


class RemoveExtensionsStage(DocumentStage):
    name = StageName.VRM0_REMOVE_EXTENSIONS.value

    def process_document(self, run: PipelineRun) -> None:
        remove_vrm_extension(run.document)


class Fbx2GltfStage(Stage):
    """Convert the job's FBX input; the produced GLB becomes the job's input."""

    name = StageName.FBX2GLTF_EXECUTE.value

    def process(self, run: PipelineRun) -> None:
        job = run.job
        status = run_fbx2gltf(run.options.fbx2gltf_executable, job.current_input, job.output_path)
        if status != 0:
            run.discard(f"{self.name}: converter exited with status {status}")
            return
        job.current_input = fbx_output_path(job.output_path)


class GltfpackStage(Stage):
    """Run the mesh optimizer from the job's current input to its output."""

    name = StageName.GLTFPACK_EXECUTE.value

    def __init__(self, settings: Optional[MeshOptimizerSettings] = None):
        self.settings = settings or MeshOptimizerSettings()

    def process(self, run: PipelineRun) -> None:
        job = run.job
        status = run_gltfpack(run.options.gltfpack_executable, job.current_input, job.output_path, self.settings)
        if status != 0:
            run.discard(f"{self.name}: gltfpack exited with status {status}")


STAGES: Dict[StageName, Type[Stage]] = {
    StageName.GLB_Z_REVERSE: ZReverseStage,
    StageName.GLB_TRANSFORMS_APPLY: TransformsApplyStage,
    StageName.GLB_T_POSE: TPoseStage,
    StageName.GLB_FIX_ROLL: FixRollStage,
    StageName.GLB_JPEG_TO_PNG: JpegToPngStage,
    StageName.GLB_OVERRIDES: OverridesStage,
    StageName.VRM0_FIX_JOINT_BUFFER: FixJointBufferStage,
    StageName.VRM0_DEFAULT_EXTENSIONS: DefaultExtensionsStage,
    StageName.VRM0_REMOVE_EXTENSIONS: RemoveExtensionsStage,
    StageName.FBX2GLTF_EXECUTE: Fbx2GltfStage,
    StageName.GLTFPACK_EXECUTE: GltfpackStage,
}


def create_stage(name: str) -> Stage:
    """Instantiate a stage by identifier; unknown names give a warning no-op stage."""
    try:
        return STAGES[StageName(name)]()
    except ValueError:
        return NoopStage(name)
