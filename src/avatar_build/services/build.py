from __future__ import annotations

import json
import shutil
from pathlib import Path
from tempfile import TemporaryDirectory
from typing import Iterable, Optional
from urllib.parse import urlparse
from uuid import uuid4

import boto3
from botocore.exceptions import BotoCoreError, ClientError
from loguru import logger

from avatar_build.config import AppSettings, get_settings
from avatar_build.errors import AvatarBuildError
from avatar_build.models import BuildArtifact, BuildRequest, BuildResponse
from avatar_build.pipeline.config import BuildOptions
from avatar_build.pipeline.external import fbx_output_path
from avatar_build.pipeline.orchestrator import run_pipelines

CONTENT_TYPE = "model/gltf-binary"
ARTIFACT_PATTERNS = ("*.vrm", "*.glb")


class BuildFailedError(AvatarBuildError):
    """Raised when a pipeline discards the asset."""


class BuildService:
    """Run avatar pipelines for HTTP requests."""

    def __init__(self, settings: Optional[AppSettings] = None) -> None:
        self.settings = settings or get_settings()
        self._s3_client = None

    def build(self, request: BuildRequest) -> BuildResponse:
        logger.info("Starting build for {source}", source=request.source_uri)

        job_id = uuid4().hex
        logs: list[str] = []
        sink_id = logger.add(
            lambda message: logs.append(message.rstrip("\n")),
            format="[{level}] {message}",
            filter=lambda record: record["extra"].get("job_id") == job_id,
        )
        try:
            with logger.contextualize(job_id=job_id), TemporaryDirectory(prefix="avatar-build-") as temp_dir:
                working_dir = Path(temp_dir)
                input_path = self._materialise_input(request.source_uri, working_dir)
                output_dir = working_dir / "output"
                output_dir.mkdir(parents=True, exist_ok=True)

                destination_uri = request.output_uri or self._default_output_uri(job_id)

                output_name = request.output_name or f"{input_path.stem}.vrm"
                options = self._build_options(request, working_dir)
                status = run_pipelines(request.pipeline, [(input_path, output_dir / output_name)], options)
                if status != 0:
                    raise BuildFailedError(f"Build discarded for {request.source_uri}")

                artifacts = list(self._collect_artifacts(output_dir, output_name, destination_uri))
        finally:
            logger.remove(sink_id)

        logger.info("Build complete with {} artifact(s)", len(artifacts))
        return BuildResponse(status="COMPLETED", artifacts=artifacts, logs=logs)

    def _default_output_uri(self, job_id: str) -> Optional[str]:
        bucket = self.settings.output_bucket
        if not bucket:
            return None
        return f"s3://{bucket}/jobs/{job_id}"

    # Internal helpers -------------------------------------------------

    def _build_options(self, request: BuildRequest, working_dir: Path) -> BuildOptions:
        options = BuildOptions(
            fbx2gltf_executable=self.settings.fbx2gltf_executable,
            gltfpack_executable=self.settings.gltfpack_executable,
        )
        if request.input_config is not None:
            path = working_dir / "input_config.json"
            path.write_text(request.input_config.model_dump_json(), encoding="utf-8")
            options.input_config_path = path
        if request.output_config is not None:
            path = working_dir / "output_config.json"
            path.write_text(json.dumps(request.output_config), encoding="utf-8")
            options.output_config_path = path
        return options

    def _materialise_input(self, uri: str, working_dir: Path) -> Path:
        if self._is_s3_uri(uri):
            bucket, key = self._split_s3_uri(uri)
            destination = working_dir / Path(key).name
            logger.debug("Downloading input from {} to {}", uri, destination)
            self._s3().download_file(bucket, key, str(destination))
            return destination

        path = Path(uri)
        if not path.exists():
            msg = f"Input path does not exist: {uri}"
            raise FileNotFoundError(msg)
        if path.is_dir():
            msg = "Input path must be a file, not a directory"
            raise IsADirectoryError(msg)
        return path

    def _collect_artifacts(
        self,
        output_dir: Path,
        output_name: str,
        destination_uri: Optional[str],
    ) -> Iterable[BuildArtifact]:
        intermediate = fbx_output_path(output_dir / output_name).name
        files = sorted({path for pattern in ARTIFACT_PATTERNS for path in output_dir.glob(pattern)})
        for file_path in files:
            if file_path.name == intermediate:
                continue
            yield self._dispatch_artifact(file_path, destination_uri)

    def _dispatch_artifact(
        self,
        artifact_path: Path,
        destination_uri: Optional[str],
    ) -> BuildArtifact:
        if destination_uri and self._is_s3_uri(destination_uri):
            bucket, key_prefix = self._split_s3_uri(destination_uri)
            if key_prefix and not key_prefix.endswith("/"):
                key_prefix = f"{key_prefix}/"
            target_key = f"{key_prefix}{artifact_path.name}"
            logger.debug("Uploading artifact {} to s3://{}/{}", artifact_path, bucket, target_key)
            self._s3().upload_file(str(artifact_path), bucket, target_key)
            return BuildArtifact(uri=f"s3://{bucket}/{target_key}", content_type=CONTENT_TYPE)

        target_dir = Path(destination_uri) if destination_uri else self.settings.work_dir / "artifacts"
        target_dir.mkdir(parents=True, exist_ok=True)
        target_path = target_dir / artifact_path.name
        logger.debug("Copying artifact {} to {}", artifact_path, target_path)
        shutil.copy2(artifact_path, target_path)
        return BuildArtifact(uri=str(target_path), content_type=CONTENT_TYPE)

    def _is_s3_uri(self, uri: str) -> bool:
        return uri.startswith("s3://")

    def _split_s3_uri(self, uri: str) -> tuple[str, str]:
        parsed = urlparse(uri)
        if parsed.scheme != "s3" or not parsed.netloc:
            msg = f"Invalid S3 URI: {uri}"
            raise ValueError(msg)
        return parsed.netloc, parsed.path.lstrip("/")

    def _s3(self):
        if self._s3_client is None:
            try:
                self._s3_client = boto3.client("s3", region_name=self.settings.aws_region)
            except (BotoCoreError, ClientError) as exc:  # pragma: no cover - boto specific
                logger.error("Unable to create S3 client: {}", exc)
                raise
        return self._s3_client


__all__ = [
    "BuildFailedError",
    "BuildService",
]
