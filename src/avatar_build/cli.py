import argparse
import sys
from pathlib import Path
from typing import List, Optional

from loguru import logger

from avatar_build.config import get_settings
from avatar_build.errors import ConfigError
from avatar_build.logging_setup import configure_logging
from avatar_build.pipeline.config import BuildOptions, load_pipeline_config
from avatar_build.pipeline.orchestrator import run_pipelines


def _parse_args(argv: List[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="avatar-build", description="Run avatar asset pipeline")
    parser.add_argument("-p", "--pipeline", required=True, type=Path, help="Pipeline configuration file name (JSON)")
    parser.add_argument(
        "-i", "--input", dest="inputs", action="append", required=True, type=Path, help="Input file name"
    )
    parser.add_argument(
        "-o", "--output", dest="outputs", action="append", required=True, type=Path, help="Output file name"
    )
    parser.add_argument("-m", "--input_config", type=Path, help="Input configuration file name (JSON)")
    parser.add_argument("-n", "--output_config", type=Path, help="Output configuration file name (JSON)")
    parser.add_argument("-x", "--fbx2gltf", type=Path, help="Path to fbx2gltf executable")
    parser.add_argument("-g", "--gltfpack", type=Path, help="Path to gltfpack executable")
    parser.add_argument("-v", "--verbose", action="store_true", help="Verbose log output")
    parser.add_argument("-d", "--debug", action="store_true", help="Enable debug output")
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    args = _parse_args(sys.argv[1:] if argv is None else argv)
    settings = get_settings()
    configure_logging("DEBUG" if args.verbose or args.debug else settings.log_level)

    if len(args.inputs) != len(args.outputs):
        logger.error("Every --input needs a matching --output")
        return 1

    pairs = list(zip(args.inputs, args.outputs))
    for input_path, output_path in pairs:
        # common mistake
        if input_path.resolve() == output_path.resolve():
            logger.error("Input and Output file should not be same: {}", input_path)
            return 1
        if not input_path.is_file():
            logger.error("Input file does not exist: {}", input_path)
            return 1

    try:
        config = load_pipeline_config(args.pipeline)
    except ConfigError as exc:
        logger.error("{}", exc)
        return 1

    options = BuildOptions(
        input_config_path=args.input_config,
        output_config_path=args.output_config,
        fbx2gltf_executable=args.fbx2gltf or settings.fbx2gltf_executable,
        gltfpack_executable=args.gltfpack or settings.gltfpack_executable,
        verbose=args.verbose,
        debug=args.debug,
    )
    return run_pipelines(config, pairs, options)


if __name__ == "__main__":  # pragma: no cover - console entrypoint
    sys.exit(main())
