"""Wrap the external ``toktx`` compressor (KTX-Software).

The compressor receives the per-level PNGs produced by the mip stage and
emits a Basis-Universal KTX2 container with the supplied mip chain.
"""

import logging
import os
import platform
import shutil
import signal
import subprocess
import sys
import time
from typing import List, Optional, Sequence

from ..config import CompressionConfig, CompressionEncoding

logger = logging.getLogger("texture_pipeline.compress")

# Known Windows NTSTATUS crash codes (as signed int32)
_CRASH_CODES_WIN = {
    -1073741819: "ACCESS_VIOLATION (0xC0000005)",
    -1073741795: "ILLEGAL_INSTRUCTION (0xC000001D)",
    -1073740791: "STACK_BUFFER_OVERRUN (0xC0000409)",
    -1073741571: "STACK_OVERFLOW (0xC00000FD)",
    -1073741515: "DLL_NOT_FOUND (0xC0000135)",
}

_TRANSIENT_MARKERS = (
    "sharing violation",
    "being used by another process",
    "temporarily unavailable",
    "resource busy",
    "access is denied",
)

_MAX_ATTEMPTS = 3


class CompressorError(RuntimeError):
    """Raised when toktx is missing or fails to produce a container."""


def _is_crash_code(returncode: int) -> Optional[str]:
    """Return a human-readable crash description, or None if not a crash."""
    if sys.platform == "win32":
        desc = _CRASH_CODES_WIN.get(returncode)
        if desc:
            return desc
        if returncode < 0:
            return f"NTSTATUS 0x{returncode & 0xFFFFFFFF:08X}"
        return None
    # Unix: negative returncode means killed by signal
    if returncode < 0:
        sig_num = -returncode
        try:
            return f"{signal.Signals(sig_num).name} (signal {sig_num})"
        except ValueError:
            return f"signal {sig_num}"
    return None


def _forward_output(text: str, stream_name: str, level: int,
                    max_lines: int = 120) -> None:
    """Log subprocess output line-by-line at the given level."""
    if not text or not text.strip():
        return
    lines = text.splitlines()
    if len(lines) > max_lines:
        logger.log(level, "[toktx] ... %d earlier %s lines omitted",
                   len(lines) - max_lines, stream_name)
        lines = lines[-max_lines:]
    for line in lines:
        if len(line) > 500:
            line = line[:500] + "..."
        logger.log(level, "[toktx] %s: %s", stream_name, line)


def _is_transient_failure(text: str, returncode: int) -> bool:
    """Return True when the failure likely came from temporary I/O contention."""
    msg = (text or "").lower()
    if any(marker in msg for marker in _TRANSIENT_MARKERS):
        return True
    return returncode in (1, 2) and ("lock" in msg or "busy" in msg)


class ToktxCompressor:
    """Build KTX2 containers from pre-computed mip PNGs."""

    def __init__(self, config: CompressionConfig):
        self.config = config
        self._tool_path: Optional[str] = None
        self._tool_resolved = False

    def resolve_tool(self) -> Optional[str]:
        """Resolve and cache the toktx path: config, PATH, then bundled bin/."""
        if self._tool_resolved:
            return self._tool_path
        self._tool_resolved = True

        tool_path = None
        if self.config.tool_path:
            if os.path.isfile(self.config.tool_path):
                tool_path = self.config.tool_path
            else:
                logger.warning("Configured toktx path not found: %s", self.config.tool_path)

        if not tool_path:
            tool_path = shutil.which("toktx")

        if not tool_path:
            from .. import BIN_DIR
            exe_suffix = ".exe" if platform.system() == "Windows" else ""
            candidates = [
                ktx_dir / f"toktx{exe_suffix}"
                for ktx_dir in sorted(BIN_DIR.glob("KTX-Software*"), reverse=True)
            ]
            candidates.append(BIN_DIR / f"toktx{exe_suffix}")
            for candidate in candidates:
                if candidate.is_file():
                    tool_path = str(candidate)
                    break

        if tool_path:
            logger.info("Using KTX2 tool: %s", tool_path)
        else:
            logger.warning(
                "toktx not found. Install KTX-Software from "
                "https://github.com/KhronosGroup/KTX-Software."
            )
        self._tool_path = tool_path
        return tool_path

    def build_command(self, tool_path: str, mip_paths: Sequence[str],
                      output_path: str, srgb: bool) -> List[str]:
        """Return the toktx argument list for one container."""
        cmd = [tool_path, "--t2"]
        if CompressionEncoding(self.config.encoding) == CompressionEncoding.UASTC:
            cmd += ["--encode", "uastc", "--uastc_quality", str(self.config.uastc_quality)]
        else:
            cmd += ["--encode", "etc1s", "--clevel", str(self.config.etc1s_compression_level)]
        cmd += ["--assign_oetf", "srgb" if srgb else "linear"]
        if len(mip_paths) > 1:
            # Without --mipmap toktx keeps only the first input image.
            cmd += ["--mipmap", "--levels", str(len(mip_paths))]
        cmd.append(output_path)
        cmd.extend(mip_paths)
        return cmd

    def compress(self, mip_paths: Sequence[str], output_path: str,
                 srgb: bool = False) -> str:
        """Run toktx and return ``output_path``.

        Raises CompressorError when the tool is missing, crashes, times out,
        or exits non-zero after retries.
        """
        if not mip_paths:
            raise CompressorError(f"No mip levels supplied for {output_path}")
        tool_path = self.resolve_tool()
        if not tool_path:
            raise CompressorError("toktx is not available")

        os.makedirs(os.path.dirname(output_path) or ".", exist_ok=True)
        cmd = self.build_command(tool_path, list(mip_paths), output_path, srgb)
        self._run_tool(cmd, mip_paths[0])
        if not os.path.isfile(output_path):
            raise CompressorError(f"toktx reported success but {output_path} is missing")
        logger.debug("KTX2 (%d levels) created: %s", len(mip_paths), output_path)
        return output_path

    def _run_tool(self, cmd: List[str], source_info: str) -> subprocess.CompletedProcess:
        """Run toktx with output forwarding, crash detection and retries."""
        timeout = self.config.tool_timeout_seconds
        logger.debug("Running toktx: %s", " ".join(cmd))
        for attempt in range(1, _MAX_ATTEMPTS + 1):
            try:
                proc = subprocess.run(
                    cmd, capture_output=True, timeout=timeout, text=True,
                    encoding="utf-8", errors="replace",
                )
            except FileNotFoundError as exc:
                raise CompressorError(f"toktx not found: {cmd[0]}") from exc
            except PermissionError as exc:
                raise CompressorError(f"toktx is not executable: {cmd[0]}") from exc
            except subprocess.TimeoutExpired as exc:
                for stream, output in (("stdout", exc.stdout), ("stderr", exc.stderr)):
                    if output:
                        text = output if isinstance(output, str) else output.decode(errors="replace")
                        _forward_output(text, stream, logging.ERROR, max_lines=10)
                raise CompressorError(
                    f"toktx timed out after {timeout}s for {source_info}"
                ) from exc

            if proc.returncode == 0:
                _forward_output(proc.stdout, "stdout", logging.INFO, max_lines=200)
                _forward_output(proc.stderr, "stderr", logging.INFO, max_lines=200)
                return proc

            _forward_output(proc.stdout, "stdout", logging.ERROR)
            _forward_output(proc.stderr, "stderr", logging.ERROR)
            crash = _is_crash_code(proc.returncode)
            if crash:
                raise CompressorError(
                    f"toktx crashed processing {source_info}: {crash} "
                    f"(exit code {proc.returncode})"
                )

            merged = f"{proc.stdout or ''}\n{proc.stderr or ''}"
            if attempt < _MAX_ATTEMPTS and _is_transient_failure(merged, proc.returncode):
                delay = 0.3 * attempt
                logger.warning(
                    "toktx retrying after transient failure (%s), attempt %d/%d in %.1fs",
                    source_info, attempt + 1, _MAX_ATTEMPTS, delay,
                )
                time.sleep(delay)
                continue
            raise CompressorError(
                f"toktx failed for {source_info} with exit code {proc.returncode}"
            )
        raise CompressorError(f"toktx failed for {source_info}")
