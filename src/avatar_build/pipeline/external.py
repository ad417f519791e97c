"""
External collaborators: the FBX converter, the mesh optimizer and the image
codec.

The converters are separate executables run with blocking ``subprocess.run``
calls (no timeout); their exit status is the only outcome the pipelines use.
"""

from __future__ import annotations

import shlex
import subprocess
from dataclasses import dataclass
from io import BytesIO
from pathlib import Path

from loguru import logger
from PIL import Image

from avatar_build.errors import ExternalToolError
from avatar_build.gltf.document import Document


def fbx_output_path(output: Path) -> Path:
    """File produced by the FBX converter for a build output."""
    return Path(f"{output}.fbx.glb")


def _run(command: list[str]) -> int:
    logger.debug("Executing: {}", " ".join(shlex.quote(part) for part in command))
    try:
        completed = subprocess.run(
            command,
            check=False,
            text=True,
            capture_output=True,
        )
    except OSError as exc:
        raise ExternalToolError(f"Unable to execute {command[0]}: {exc}") from exc

    for line in (completed.stdout or "").splitlines():
        logger.debug("{}", line)
    for line in (completed.stderr or "").splitlines():
        logger.debug("{}", line)

    if completed.returncode != 0:
        logger.error("{} exited with status {}", Path(command[0]).name, completed.returncode)
    return completed.returncode


def run_fbx2gltf(executable: Path, input_path: Path, output_path: Path) -> int:
    """
    Convert an FBX file to GLB.

    Returns:
        The converter's exit status; the GLB is written to ``fbx_output_path(output_path)``
    """
    command = [
        str(executable),
        "--binary",
        "--input",
        str(input_path),
        "--output",
        str(fbx_output_path(output_path)),
    ]
    return _run(command)


@dataclass
class MeshOptimizerSettings:
    """gltfpack options: quantization bit depths, simplification and textures."""

    quantize: bool = False
    pos_bits: int = 14
    tex_bits: int = 12
    nrm_bits: int = 8
    col_bits: int = 8
    trn_bits: int = 16
    rot_bits: int = 12
    scl_bits: int = 16
    anim_freq: int = 30
    simplify_threshold: float = 0.7
    texture_quality: int = 8
    texture_scale: float = 1.0

    def to_args(self) -> list[str]:
        args = [
            "-vp", str(self.pos_bits),
            "-vt", str(self.tex_bits),
            "-vn", str(self.nrm_bits),
            "-vc", str(self.col_bits),
            "-at", str(self.trn_bits),
            "-ar", str(self.rot_bits),
            "-as", str(self.scl_bits),
            "-af", str(self.anim_freq),
            "-si", str(self.simplify_threshold),
            "-tq", str(self.texture_quality),
            "-ts", str(self.texture_scale),
        ]
        if not self.quantize:
            args.append("-noq")
        return args


def run_gltfpack(
    executable: Path,
    input_path: Path,
    output_path: Path,
    settings: MeshOptimizerSettings | None = None,
) -> int:
    """Optimise a GLB with gltfpack and return its exit status."""
    settings = settings or MeshOptimizerSettings()
    command = [
        str(executable),
        "-i",
        str(input_path),
        "-o",
        str(output_path),
        *settings.to_args(),
    ]
    return _run(command)


def jpeg_to_png(data: bytes) -> bytes:
    """
    Re-encode JPEG bytes as PNG.

    Raises:
        ExternalToolError: if the bytes cannot be decoded
    """
    try:
        with Image.open(BytesIO(data)) as img:
            if img.mode not in ("1", "L", "LA", "P", "RGB", "RGBA"):
                img = img.convert("RGB")
            out = BytesIO()
            img.save(out, format="PNG")
    except OSError as exc:
        raise ExternalToolError(f"Unable to re-encode image: {exc}") from exc
    return out.getvalue()


def convert_images_to_png(document: Document) -> int:
    """
    Re-encode every embedded JPEG image of the document as PNG.

    Returns:
        Number of images converted
    """
    converted = 0
    for index, image in enumerate(document.images):
        if image.get("mimeType") != "image/jpeg" or "bufferView" not in image:
            continue
        view_index = image["bufferView"]
        document.set_view_data(view_index, jpeg_to_png(document.view_bytes(view_index)))
        image["mimeType"] = "image/png"
        converted += 1
        logger.debug("Image {} converted to PNG", index)

    if converted:
        document.repack()
    return converted


__all__ = [
    "MeshOptimizerSettings",
    "convert_images_to_png",
    "fbx_output_path",
    "jpeg_to_png",
    "run_fbx2gltf",
    "run_gltfpack",
]
