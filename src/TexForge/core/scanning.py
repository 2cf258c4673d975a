"""Texture discovery for batch conversion."""

import logging
import os
from pathlib import Path
from typing import List

from PIL import Image

from ..config import PipelineConfig, TextureType
from .classify import classify_texture
from .records import TextureJob

logger = logging.getLogger("texture_pipeline.scanning")


def build_job(source_path: str, rel_path: str = None) -> TextureJob:
    """Create a job for a single file, classified by its name."""
    tex_type = classify_texture(source_path)
    with Image.open(source_path) as img:
        w, h = img.size
    return TextureJob(
        source_path=source_path,
        rel_path=rel_path or os.path.basename(source_path),
        texture_type=tex_type.value,
        width=w,
        height=h,
        is_gloss=tex_type == TextureType.GLOSS,
    )


def scan_textures(input_dir: str, config: PipelineConfig) -> List[TextureJob]:
    """Walk ``input_dir`` and build a job for every supported image."""
    jobs = []
    supported = {ext.lower() for ext in config.supported_formats}
    input_root_real = os.path.realpath(input_dir)

    for root, dirs, files in os.walk(input_dir):
        dirs.sort()
        # Never pick up our own outputs when they live under the input tree.
        dirs[:] = [
            d for d in dirs
            if os.path.realpath(os.path.join(root, d)) not in {
                os.path.realpath(config.output_dir),
                os.path.realpath(config.intermediate_dir),
            }
        ]
        for fname in sorted(files):
            if Path(fname).suffix.lower() not in supported:
                continue
            fpath = os.path.join(root, fname)
            real_fpath = os.path.realpath(fpath)
            try:
                if os.path.commonpath([input_root_real, real_fpath]) != input_root_real:
                    logger.warning(
                        "Skipping file outside input root via symlink: %s", fpath
                    )
                    continue
            except ValueError:
                logger.warning("Skipping file with incompatible path root: %s", fpath)
                continue

            try:
                job = build_job(fpath, os.path.relpath(fpath, input_dir))
            except (OSError, ValueError, Image.DecompressionBombError) as e:
                logger.warning("Failed to read %s: %s", fpath, e)
                continue

            if config.max_image_pixels > 0 and job.width * job.height > config.max_image_pixels:
                logger.warning(
                    "Skipping %s: %dx%d exceeds max_image_pixels (%d)",
                    fname, job.width, job.height, config.max_image_pixels,
                )
                continue
            jobs.append(job)

    logger.info("Scanned %d textures from %s", len(jobs), input_dir)
    return jobs
