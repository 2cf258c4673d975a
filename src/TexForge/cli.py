"""Command-line interface for the texture pipeline."""

import argparse
import json
import logging
import os
import signal
import sys

from .config import HistogramQuality, PipelineConfig, TextureType, histogram_settings_for_quality
from .core import setup_logging

logger = logging.getLogger("texture_pipeline")

EXIT_FAILED = 1
EXIT_CANCELLED = 130


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="texforge",
        description="Build mip chains, apply Toksvig/AO/histogram corrections "
                    "and write KTX2 containers with embedded metadata",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  texforge --input ./textures --output ./textures_ktx2
  texforge -c config.yaml
  texforge -i rock_roughness.png --normal-map rock_normal.png
  texforge -i ./textures --histogram fast --dry-run
  texforge --generate-config
  texforge --inspect rock_roughness.ktx2
        """
    )
    io_group = parser.add_argument_group("input/output")
    io_group.add_argument("--input", "-i", help="Texture file or directory to convert")
    io_group.add_argument("--output", "-o", help="Directory receiving .ktx2 files")
    io_group.add_argument("--config", "-c", help="Pipeline config YAML")

    tex_group = parser.add_argument_group("texture processing")
    tex_group.add_argument("--type", choices=[t.value for t in TextureType],
                           help="Force the texture type instead of classifying by name")
    tex_group.add_argument("--normal-map",
                           help="Normal map for Toksvig correction (enables Toksvig)")
    tex_group.add_argument("--histogram", choices=[q.value for q in HistogramQuality],
                           help="Enable histogram normalization with a preset")

    run_group = parser.add_argument_group("run control")
    run_group.add_argument("--workers", type=int, help="Textures converted in parallel")
    run_group.add_argument("--dry-run", action="store_true",
                           help="Build chains and metadata but write nothing")
    run_group.add_argument("--log-level",
                           choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"])

    util_group = parser.add_argument_group("utilities")
    util_group.add_argument("--generate-config", action="store_true",
                            help="Write a default config.yaml and exit")
    util_group.add_argument("--inspect", metavar="FILE",
                            help="Print header and metadata of a KTX2 file as JSON")
    return parser


def _fail(message: str, code: int = EXIT_FAILED):
    logger.error(message)
    print(f"Error: {message}")
    sys.exit(code)


def _generate_config(dest: str):
    if os.path.isdir(dest):
        dest = os.path.join(dest, "config.yaml")
    PipelineConfig().to_yaml(dest)
    logger.info("Wrote default config to %s", dest)
    print(f"Generated default {dest}")


def _load_config(path) -> PipelineConfig:
    if not path:
        return PipelineConfig()
    if not os.path.exists(path):
        _fail(f"Config file not found: {path}")
    try:
        return PipelineConfig.from_yaml(path)
    except ValueError as e:
        _fail(f"Invalid config: {e}")


def _apply_overrides(config: PipelineConfig, args: argparse.Namespace):
    if args.input:
        config.input_dir = args.input
    if args.output:
        config.output_dir = args.output
        config.intermediate_dir = os.path.join(args.output, "intermediate")
    if args.workers is not None:
        config.max_workers = args.workers
    if args.dry_run:
        config.dry_run = True
    if args.log_level:
        config.log_level = args.log_level
    if args.histogram:
        config.histogram = histogram_settings_for_quality(args.histogram)
    if args.normal_map:
        config.toksvig.enabled = True


def _inspect(config: PipelineConfig, path: str, log_level=None):
    from .pipeline import TexturePipeline

    if log_level:
        setup_logging(log_level, force=True)
    try:
        info = TexturePipeline(config).inspect(path)
    except (OSError, ValueError) as e:
        _fail(f"Cannot inspect {path}: {e}")
    print(json.dumps(info, indent=2))


def main(argv=None):
    """Parse CLI arguments, run the pipeline, and handle graceful shutdown."""
    args = build_parser().parse_args(argv)

    if args.generate_config:
        _generate_config(args.config or args.output or "config.yaml")
        return

    # Early validation warnings from from_yaml() must reach stderr before
    # setup_logging() replaces this handler.
    logging.basicConfig(level=logging.WARNING, format="%(levelname)s: %(message)s")
    config = _load_config(args.config)

    if args.inspect:
        _inspect(config, args.inspect, args.log_level)
        return

    _apply_overrides(config, args)
    if not config.input_dir or not os.path.exists(config.input_dir):
        _fail(f"Input not found: {config.input_dir}")

    log_file = None
    if not config.dry_run:
        os.makedirs(config.output_dir, exist_ok=True)
        log_file = os.path.join(config.output_dir, "pipeline.log")
    setup_logging(config.log_level, log_file, force=True)

    try:
        config.validate()
    except ValueError as e:
        _fail(str(e))

    from .pipeline import PipelineCancelledError, TexturePipeline

    pipeline = TexturePipeline(config)

    def _on_sigterm(signum, frame):
        logger.warning("SIGTERM received, cancelling before the next compression")
        pipeline.request_cancel()

    if hasattr(signal, "SIGTERM"):
        signal.signal(signal.SIGTERM, _on_sigterm)

    try:
        results = pipeline.run(
            [config.input_dir], texture_type=args.type, normal_map=args.normal_map,
        )
    except KeyboardInterrupt:
        logger.warning("Interrupted by user.")
        pipeline.request_cancel()
        sys.exit(EXIT_CANCELLED)
    except PipelineCancelledError as exc:
        logger.warning("Pipeline cancelled: %s", exc)
        sys.exit(EXIT_CANCELLED)
    except (OSError, ValueError) as exc:
        _fail(f"Pipeline aborted: {exc}")

    failed = sum(1 for r in results if r["error"])
    if failed:
        logger.error("%d of %d textures failed", failed, len(results))
        sys.exit(EXIT_FAILED)


if __name__ == "__main__":
    main()
