"""Image I/O utilities -- load/save numpy arrays with explicit bit-depth handling."""

import logging
import os
import threading
from pathlib import Path
from typing import Tuple

import numpy as np
from PIL import Image

# Pixel-count validation happens in load_image() after reading the header.
Image.MAX_IMAGE_PIXELS = None

logger = logging.getLogger("texture_pipeline.io")


def read_image_size(path: str) -> Tuple[int, int]:
    """Return (width, height) from the image header without decoding pixels."""
    with Image.open(path) as img:
        return img.width, img.height


def load_image(path: str, max_pixels: int = 0) -> np.ndarray:
    """Load an image as a float32 RGBA array in [0, 1].

    8-bit modes are normalized by 255, 16-bit integer modes by 65535.
    Grayscale inputs are expanded to RGB and missing alpha is set to 1.
    """
    ext = Path(path).suffix.lower()
    try:
        with Image.open(path) as img:
            if max_pixels > 0 and img.width * img.height > max_pixels:
                raise ValueError(
                    f"Image too large: {img.width}x{img.height} = "
                    f"{img.width * img.height:,} pixels (max {max_pixels:,})."
                )

            if img.mode in ("I;16", "I;16B", "I;16L", "I;16N"):
                logger.debug("Loading %s as 16-bit integer mode %s", path, img.mode)
                gray = np.asarray(img, dtype=np.float32) / 65535.0
                return _gray_to_rgba(gray)

            if img.mode == "I":
                arr = np.asarray(img, dtype=np.float32)
                # PNG stores 16-bit grayscale as mode I on some Pillow versions.
                max_value = 65535.0 if float(arr.max(initial=0.0)) > 255.0 else 255.0
                logger.debug("Loading %s as mode I with max %.0f", path, max_value)
                return _gray_to_rgba(np.clip(arr / max_value, 0.0, 1.0))

            if img.mode == "F":
                arr = np.asarray(img, dtype=np.float32)
                return _gray_to_rgba(np.clip(arr, 0.0, 1.0))

            if img.mode != "RGBA":
                logger.debug("Converting '%s' from %s to RGBA", path, img.mode)
                with img.convert("RGBA") as converted:
                    arr = np.asarray(converted, dtype=np.float32) / 255.0
            else:
                arr = np.asarray(img, dtype=np.float32) / 255.0
            return np.ascontiguousarray(arr, dtype=np.float32)
    except ValueError:
        raise
    except Exception as e:
        logger.error("Failed to open image '%s' (ext=%s): %s", path, ext, e)
        raise IOError(f"Failed to open image: {path} ({e})") from e


def _gray_to_rgba(gray: np.ndarray) -> np.ndarray:
    h, w = gray.shape[:2]
    rgba = np.empty((h, w, 4), dtype=np.float32)
    rgba[:, :, :3] = gray[:, :, np.newaxis]
    rgba[:, :, 3] = 1.0
    return rgba


def save_image(arr: np.ndarray, path: str, bits: int = 8):
    """Save a float32 [0, 1] array as an image.

    Handles RGBA, RGB, and grayscale (2D). Uses an atomic write (temp file +
    ``os.replace``) so readers never observe a truncated file.

    Args:
        arr: float32 array in [0, 1] range.
        path: Output file path.
        bits: Output bit depth (8 or 16). 16-bit is written through cv2 and
              is only supported for PNG.

    """
    arr = np.clip(np.asarray(arr, dtype=np.float32), 0, 1)

    if arr.size == 0 or arr.ndim < 2:
        raise ValueError(
            f"Cannot save empty or degenerate array (shape={arr.shape}) to {path}"
        )

    ext = Path(path).suffix.lower()
    if bits == 16 and ext != ".png":
        raise ValueError(f"16-bit output is only supported for PNG, got {path}")

    parent_dir = os.path.dirname(path) or "."
    os.makedirs(parent_dir, exist_ok=True)

    # Keep the original extension so Pillow/cv2 can infer the format.
    tmp_path = f"{path}.tmp.{os.getpid()}.{threading.get_ident()}{ext}"

    try:
        if bits == 16:
            import cv2

            arr_16 = np.round(arr * 65535.0).astype(np.uint16)
            if arr_16.ndim == 3 and arr_16.shape[-1] == 1:
                arr_16 = arr_16[:, :, 0]
            if arr_16.ndim == 2:
                png_data = arr_16
            elif arr_16.shape[-1] == 4:
                png_data = arr_16[:, :, [2, 1, 0, 3]]  # RGBA -> BGRA
            else:
                png_data = arr_16[:, :, :3][:, :, ::-1]  # RGB -> BGR
            if not cv2.imwrite(tmp_path, np.ascontiguousarray(png_data)):
                raise IOError(f"cv2.imwrite failed for 16-bit PNG: {path}")
            os.replace(tmp_path, path)
            logger.debug("Saved: %s (16bit)", path)
            return

        arr_out = np.round(arr * 255).astype(np.uint8)
        with Image.fromarray(arr_out) as img:
            if ext in (".jpg", ".jpeg") and img.mode == "RGBA":
                with img.convert("RGB") as converted:
                    converted.save(tmp_path, quality=95)
            else:
                img.save(tmp_path)
        os.replace(tmp_path, path)
        logger.debug("Saved: %s (%s, 8bit)", path, arr_out.shape)
    finally:
        if os.path.exists(tmp_path):
            try:
                os.remove(tmp_path)
            except OSError:
                pass


def write_bytes_atomic(path: str, data: bytes) -> None:
    """Write bytes via temp file + fsync + ``os.replace``."""
    parent_dir = os.path.dirname(os.path.abspath(path))
    os.makedirs(parent_dir, exist_ok=True)
    tmp_path = f"{path}.tmp.{os.getpid()}.{threading.get_ident()}"
    try:
        with open(tmp_path, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, path)
    finally:
        if os.path.exists(tmp_path):
            try:
                os.remove(tmp_path)
            except OSError:
                pass
