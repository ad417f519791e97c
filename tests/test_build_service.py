from __future__ import annotations

import threading
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from subprocess import CompletedProcess
from typing import Any
from unittest.mock import MagicMock, patch

import pytest
from loguru import logger

from avatar_build.config import AppSettings
from avatar_build.models import BuildRequest
from avatar_build.services.build import BuildFailedError, BuildService

from conftest import GltfBuilder, build_hips_spine


@pytest.fixture
def glb_bytes(builder: GltfBuilder) -> bytes:
    return build_hips_spine(builder).to_glb()


@pytest.fixture
def settings(tmp_path: Path) -> AppSettings:
    return AppSettings(work_dir=tmp_path / "work")


def _request(source: Path | str, *components: str, **kwargs: Any) -> BuildRequest:
    return BuildRequest.model_validate({
        "source_uri": str(source),
        "pipeline": {"pipelines": [{"name": "gltf_pipeline", "components": list(components)}]},
        **kwargs,
    })


def test_build_local_asset(tmp_path: Path, glb_bytes: bytes, settings: AppSettings):
    source_file = tmp_path / "input.glb"
    source_file.write_bytes(glb_bytes)
    service = BuildService(settings=settings)

    response = service.build(_request(source_file, "vrm0_fix_joint_buffer"))

    assert response.status == "COMPLETED"
    assert len(response.artifacts) == 1

    artifact_path = Path(response.artifacts[0].uri)
    assert artifact_path == settings.work_dir / "artifacts" / "input.vrm"
    assert artifact_path.exists()
    assert response.artifacts[0].content_type == "model/gltf-binary"
    assert "[INFO] vrm0_fix_joint_buffer" in response.logs


def test_fbx_intermediate_is_not_an_artifact(tmp_path: Path, glb_bytes: bytes, settings: AppSettings):
    def fake_converter(cmd: list[str], **_: Any):
        Path(cmd[cmd.index("--output") + 1]).write_bytes(glb_bytes)
        return CompletedProcess(args=cmd, returncode=0, stdout="mock stdout", stderr="")

    source_file = tmp_path / "input.fbx"
    source_file.write_bytes(b"dummy data")
    request = BuildRequest.model_validate({
        "source_uri": str(source_file),
        "output_uri": str(tmp_path / "delivered"),
        "pipeline": {"pipelines": [
            {"name": "fbx_pipeline", "components": ["fbx2gltf_execute"]},
            {"name": "gltf_pipeline", "components": []},
        ]},
    })

    with patch("avatar_build.pipeline.external.subprocess.run", side_effect=fake_converter):
        response = BuildService(settings=settings).build(request)

    assert [Path(artifact.uri).name for artifact in response.artifacts] == ["input.vrm"]
    assert (tmp_path / "delivered" / "input.vrm").exists()
    assert "[DEBUG] mock stdout" in response.logs


def test_configs_are_forwarded(tmp_path: Path, glb_bytes: bytes, settings: AppSettings):
    source_file = tmp_path / "input.glb"
    source_file.write_bytes(glb_bytes)
    request = _request(
        source_file,
        "glb_overrides",
        input_config={"bones": {"hips": "Hips"}},
        output_config={"overrides": {"materials": [{"rules": {"name": ".*"}, "values": {"alphaMode": "MASK"}}]}},
        output_name="custom.glb",
    )

    response = BuildService(settings=settings).build(request)

    assert Path(response.artifacts[0].uri).name == "custom.glb"


def test_discarded_build_raises(tmp_path: Path, glb_bytes: bytes, settings: AppSettings):
    source_file = tmp_path / "input.glb"
    source_file.write_bytes(glb_bytes)
    request = _request(source_file, "vrm0_default_extensions", input_config={"bones": {"hips": "Hips"}})

    with pytest.raises(BuildFailedError):
        BuildService(settings=settings).build(request)


def test_missing_local_source(tmp_path: Path, settings: AppSettings):
    with pytest.raises(FileNotFoundError):
        BuildService(settings=settings).build(_request(tmp_path / "missing.glb"))


def test_directory_source(tmp_path: Path, settings: AppSettings):
    with pytest.raises(IsADirectoryError):
        BuildService(settings=settings).build(_request(tmp_path))


def test_s3_round_trip(glb_bytes: bytes, settings: AppSettings):
    client = MagicMock()
    client.download_file.side_effect = lambda bucket, key, destination: Path(destination).write_bytes(glb_bytes)
    request = _request("s3://assets/avatars/input.glb", output_uri="s3://delivery/jobs/1")

    with patch("avatar_build.services.build.boto3.client", return_value=client):
        response = BuildService(settings=settings).build(request)

    client.download_file.assert_called_once()
    assert client.download_file.call_args.args[:2] == ("assets", "avatars/input.glb")
    upload_args = client.upload_file.call_args.args
    assert upload_args[1:] == ("delivery", "jobs/1/input.vrm")
    assert response.artifacts[0].uri == "s3://delivery/jobs/1/input.vrm"


def test_concurrent_builds_keep_their_own_logs(tmp_path: Path, glb_bytes: bytes, settings: AppSettings):
    barrier = threading.Barrier(2)

    def fake_run(config: Any, pairs: list, options: Any) -> int:
        source, output = pairs[0]
        logger.info("hello from {}", source.stem)
        barrier.wait(timeout=10)
        output.write_bytes(glb_bytes)
        logger.info("done with {}", source.stem)
        return 0

    requests = []
    for name in ("a", "b"):
        source_file = tmp_path / f"{name}.glb"
        source_file.write_bytes(glb_bytes)
        requests.append(_request(source_file))

    with patch("avatar_build.services.build.run_pipelines", side_effect=fake_run):
        with ThreadPoolExecutor(max_workers=2) as pool:
            first, second = pool.map(BuildService(settings=settings).build, requests)

    assert "[INFO] hello from a" in first.logs
    assert "[INFO] done with a" in first.logs
    assert "[INFO] hello from b" not in first.logs
    assert "[INFO] done with b" not in first.logs
    assert "[INFO] hello from b" in second.logs
    assert "[INFO] hello from a" not in second.logs
