"""Orchestrate texture conversion end-to-end.

`TexturePipeline` loads each source, builds its mip chain, applies the
Toksvig, AO and histogram corrections, hands the levels to ``toktx`` and
finally splices the TLV metadata into the resulting KTX2 container.
"""

import logging
import os
import shutil
import threading
import time
from concurrent.futures import FIRST_COMPLETED, ThreadPoolExecutor, wait
from typing import Iterable, List, Optional

from tqdm import tqdm

from .config import (
    SRGB_TEXTURE_TYPES, CompressionEncoding, HistogramMode, PipelineConfig, TextureType,
)
from .core import (
    TextureJob, build_job, classify_texture_by_content, get_intermediate_dir, get_output_path,
    load_image, mip_level_path, save_image, scan_textures,
)
from .kvd import NormalLayout, encode_metadata, parse_layout, patch_file, read_key_values
from .kvd.tlv import decode_metadata
from .phases.ao import AOProcessor
from .phases.compress import ToktxCompressor
from .phases.histogram import HistogramAnalyzer, invert_for_storage
from .phases.mipmap import MipGenerator, save_chain
from .phases.normal_match import find_normal_map, is_gloss_by_name
from .phases.postprocess import AOCorrection
from .phases.toksvig import ToksvigProcessor, variance_to_image

logger = logging.getLogger("texture_pipeline.pipeline")

_TOKSVIG_TYPES = (TextureType.ROUGHNESS, TextureType.GLOSS)


class PipelineCancelledError(RuntimeError):
    """Raised when a user-requested pipeline cancellation is observed."""


def _empty_result(job: TextureJob) -> dict:
    return {
        "source": job.source_path,
        "rel_path": job.rel_path,
        "texture_type": job.texture_type,
        "output": None,
        "mip_levels": 0,
        "toksvig_applied": False,
        "normal_map": None,
        "histogram": None,
        "metadata_bytes": 0,
        "mip_paths": [],
        "error": None,
    }


class TexturePipeline:
    """Convert textures into KTX2 containers with embedded metadata."""

    def __init__(self, config: PipelineConfig, compressor: Optional[ToktxCompressor] = None):
        """Bind configuration; ``compressor`` defaults to toktx from config."""
        self.config = config
        self.compressor = compressor or ToktxCompressor(config.compression)
        self.analyzer = HistogramAnalyzer()
        self.results: List[dict] = []
        self._results_lock = threading.Lock()
        self._cancel_event = threading.Event()

    def request_cancel(self):
        """Request cooperative cancellation for the active run."""
        self._cancel_event.set()

    def _check_cancel(self, job: TextureJob):
        if self._cancel_event.is_set():
            raise PipelineCancelledError(f"Cancelled before compressing {job.rel_path}")

    # ------------------------------------------
    # Single texture
    # ------------------------------------------

    def _is_gloss(self, job: TextureJob, tex_type: TextureType) -> bool:
        if tex_type not in _TOKSVIG_TYPES:
            return False
        if job.type_override:
            return tex_type == TextureType.GLOSS
        by_name = is_gloss_by_name(job.source_path)
        if by_name is not None:
            return by_name
        return job.is_gloss or tex_type == TextureType.GLOSS

    def _resolve_normal_map(self, job: TextureJob) -> Optional[str]:
        explicit = job.normal_map_path or self.config.toksvig.normal_map_path
        if explicit:
            if os.path.isfile(explicit):
                return explicit
            logger.warning("Configured normal map not found: %s", explicit)
            return None
        return find_normal_map(job.source_path, validate_dimensions=True)

    def convert(self, job: TextureJob) -> dict:
        """Process one texture and return its result dictionary.

        Failures are logged and reported under ``error``; cancellation
        raises PipelineCancelledError.
        """
        result = _empty_result(job)
        start = time.monotonic()
        try:
            self._convert(job, result)
        except PipelineCancelledError:
            raise
        except Exception as e:
            logger.error("Failed to convert %s: %s", job.rel_path, e, exc_info=True)
            result["error"] = str(e)
        logger.debug("%s finished in %.2fs", job.rel_path, time.monotonic() - start)
        return result

    def _convert(self, job: TextureJob, result: dict):
        cfg = self.config
        pixels = load_image(job.source_path, max_pixels=cfg.max_image_pixels)
        tex_type = TextureType(job.texture_type)
        if tex_type == TextureType.GENERIC:
            tex_type = classify_texture_by_content(pixels)
            result["texture_type"] = tex_type.value
        profile = cfg.mipmap.profile_for(tex_type)
        is_gloss = self._is_gloss(job, tex_type)
        profile.is_gloss = is_gloss
        keep = cfg.keep_intermediates

        generator = MipGenerator(post_processors=(AOCorrection(AOProcessor(cfg.ao)),))
        chain = generator.generate(pixels, profile)

        work_dir = get_intermediate_dir(job.rel_path, cfg.intermediate_dir)
        write_files = not cfg.dry_run

        if cfg.toksvig.enabled and tex_type in _TOKSVIG_TYPES:
            normal_path = self._resolve_normal_map(job)
            result["normal_map"] = normal_path
            if normal_path is None:
                logger.warning("No normal map for %s; Toksvig skipped", job.rel_path)
            else:
                processor = ToksvigProcessor(cfg.toksvig)
                normal_chain = processor.prepare_normal_chain(
                    load_image(normal_path, max_pixels=cfg.max_image_pixels), profile
                )
                toksvig = processor.apply(
                    chain, normal_chain, is_gloss=is_gloss,
                    capture_variance=keep and write_files, profile=profile,
                )
                if keep and write_files and toksvig.applied:
                    save_chain(chain, work_dir, job.name, tag="_gloss_mip")
                    for lvl, variance in enumerate(toksvig.variance_maps):
                        if variance is not None:
                            save_image(
                                variance_to_image(variance),
                                mip_level_path(work_dir, job.name, lvl, tag="_toksvig_variance_mip"),
                            )
                    save_chain(toksvig.chain, work_dir, job.name, tag="_composite_mip")
                chain = toksvig.chain
                result["toksvig_applied"] = toksvig.applied

        histogram = None
        hist_settings = cfg.histogram
        if HistogramMode(hist_settings.mode) != HistogramMode.OFF:
            histogram = self.analyzer.analyze(chain[0], hist_settings)
            if histogram.success:
                chain = self.analyzer.normalize_chain(chain, histogram, hist_settings)
            result["histogram"] = histogram.to_dict()

        result["mip_levels"] = len(chain)
        if not write_files:
            logger.info("[dry-run] %s: %d levels (%s)", job.rel_path, len(chain), tex_type.value)
            return

        mip_paths = save_chain(chain, work_dir, job.name)
        result["mip_paths"] = mip_paths
        if not cfg.compression.enabled:
            logger.info("%s: compression disabled, %d mip PNGs kept in %s",
                        job.rel_path, len(mip_paths), work_dir)
            return

        self._check_cancel(job)
        output_path = job.output_path or get_output_path(job.rel_path, cfg.output_dir)
        self.compressor.compress(
            mip_paths, output_path, srgb=tex_type.value in SRGB_TEXTURE_TYPES
        )
        result["output"] = output_path

        layout = None
        if tex_type == TextureType.NORMAL and cfg.compression.write_normal_layout:
            etc1s = CompressionEncoding(cfg.compression.encoding) == CompressionEncoding.ETC1S
            layout = NormalLayout.RGBxAy if etc1s else NormalLayout.RG
        stored = invert_for_storage(histogram) if histogram is not None and histogram.success else None
        metadata = encode_metadata(stored, hist_settings, layout)
        if metadata:
            patch_file(output_path, cfg.metadata_key, metadata)
        result["metadata_bytes"] = len(metadata)

        if not (keep or cfg.mipmap.save_mipmaps):
            shutil.rmtree(work_dir, ignore_errors=True)
            result["mip_paths"] = []
        logger.info(
            "%s -> %s (%d levels, %d metadata bytes)",
            job.rel_path, output_path, len(chain), len(metadata),
        )

    # ------------------------------------------
    # Batch
    # ------------------------------------------

    def collect_jobs(self, inputs: Optional[Iterable[str]] = None,
                     texture_type: Optional[str] = None,
                     normal_map: Optional[str] = None) -> List[TextureJob]:
        """Build jobs from files and directories (default: ``input_dir``)."""
        jobs: List[TextureJob] = []
        for item in (list(inputs) if inputs else [self.config.input_dir]):
            if os.path.isdir(item):
                jobs.extend(scan_textures(item, self.config))
            elif os.path.isfile(item):
                jobs.append(build_job(item))
            else:
                raise FileNotFoundError(f"Input not found: {item}")
        for job in jobs:
            if texture_type:
                job.texture_type = TextureType(texture_type).value
                job.is_gloss = job.texture_type == TextureType.GLOSS.value
                job.type_override = True
            if normal_map:
                job.normal_map_path = normal_map
        return jobs

    def run(self, inputs: Optional[Iterable[str]] = None,
            texture_type: Optional[str] = None,
            normal_map: Optional[str] = None) -> List[dict]:
        """Convert every input in a bounded thread pool.

        Per-texture failures are recorded in the results and never abort the
        batch. Raises PipelineCancelledError after ``request_cancel``.
        """
        self._cancel_event.clear()
        self.results = []
        jobs = self.collect_jobs(inputs, texture_type, normal_map)
        if not jobs:
            logger.warning("No textures to process.")
            return []

        workers = max(1, min(self.config.max_workers, len(jobs)))
        logger.info("Converting %d textures with %d workers", len(jobs), workers)
        cancelled = False
        with ThreadPoolExecutor(max_workers=workers) as executor:
            futures = {executor.submit(self.convert, job): job for job in jobs}
            pending = set(futures)
            with tqdm(total=len(futures), desc="Converting") as pbar:
                while pending:
                    if self._cancel_event.is_set():
                        for future in pending:
                            if future.done():
                                self._collect(futures[future], future)
                            else:
                                future.cancel()
                                self._record(futures[future], "Cancelled by user")
                        cancelled = True
                        break
                    done, pending = wait(pending, timeout=0.2, return_when=FIRST_COMPLETED)
                    for future in done:
                        if self._collect(futures[future], future):
                            cancelled = True
                        pbar.update(1)

        self._log_summary()
        if cancelled:
            raise PipelineCancelledError("Pipeline cancelled by user request")
        return self.results

    def _collect(self, job: TextureJob, future) -> bool:
        """Store a finished future's result; True if it observed cancellation."""
        try:
            res = future.result()
        except PipelineCancelledError as e:
            self._record(job, str(e))
            return True
        with self._results_lock:
            self.results.append(res)
        return False

    def _record(self, job: TextureJob, message: str):
        res = _empty_result(job)
        res["error"] = message
        with self._results_lock:
            self.results.append(res)

    def _log_summary(self):
        failed = [r for r in self.results if r["error"]]
        logger.info(
            "Done: %d converted, %d failed", len(self.results) - len(failed), len(failed),
        )
        for res in failed:
            logger.warning("  %s: %s", res["rel_path"], res["error"])

    # ------------------------------------------
    # Inspection
    # ------------------------------------------

    def inspect(self, path: str) -> dict:
        """Describe a KTX2 container and decode its metadata entry."""
        with open(path, "rb") as f:
            data = f.read()
        layout = parse_layout(data)
        entries = read_key_values(data, layout)
        value = entries.get(self.config.metadata_key)
        return {
            "path": path,
            "width": layout.pixel_width,
            "height": layout.pixel_height,
            "levels": len(layout.levels),
            "vk_format": layout.vk_format,
            "supercompression_scheme": layout.supercompression_scheme,
            "keys": list(entries),
            "metadata_key": self.config.metadata_key,
            "metadata_bytes": len(value) if value is not None else 0,
            "metadata": decode_metadata(value).to_dict() if value is not None else None,
        }
