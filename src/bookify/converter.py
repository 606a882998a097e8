"""EPUB to KEPUB conversion through the external kepubify executable.

The conversion algorithm itself belongs to kepubify; this module only
validates the input, runs the binary in a subprocess with a timeout, and
reports coarse progress (10 on start, 50 once the input is validated, 100
when the output file exists).
"""

import logging
import os
import shutil
import subprocess
import zipfile
from typing import List, Optional

from .errors import ConversionError
from .queue.backends import Converter, ProgressCallback

logger = logging.getLogger(__name__)


def get_kepubify_cmd(executable: str = "kepubify") -> str:
    """Resolve the kepubify executable (PATH lookup, else as given)."""
    return shutil.which(executable) or executable


def check_kepubify(executable: str = "kepubify") -> bool:
    """Verify kepubify is installed and runnable."""
    try:
        subprocess.run(
            [get_kepubify_cmd(executable), "--version"],
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            check=True,
            timeout=30,
        )
        return True
    except (FileNotFoundError, subprocess.CalledProcessError, subprocess.TimeoutExpired, OSError):
        return False


class KepubifyConverter(Converter):
    """Runs ``kepubify -o <output> <input>`` for one file.

    Example:
        >>> converter = KepubifyConverter(timeout_s=120)
        >>> converter.convert("temp/book.epub", "temp/book.kepub.epub", print)
        10
        50
        100
    """

    def __init__(self, executable: str = "kepubify", timeout_s: int = 300):
        self.executable = executable
        self.timeout_s = timeout_s

    def build_command(self, input_path: str, output_path: str) -> List[str]:
        return [get_kepubify_cmd(self.executable), "-o", output_path, input_path]

    def convert(
        self, input_path: str, output_path: str, on_progress: Optional[ProgressCallback] = None
    ) -> None:
        _report(on_progress, 10)

        if not os.path.isfile(input_path):
            raise ConversionError(f"input file does not exist: {input_path}")

        size = os.path.getsize(input_path)
        logger.info("Processing EPUB: %s (size: %d bytes)", input_path, size)

        # EPUB is a ZIP container; reject anything else before spawning kepubify
        if not zipfile.is_zipfile(input_path):
            raise ConversionError(f"failed to open EPUB as ZIP: {input_path}")

        _report(on_progress, 50)

        cmd = self.build_command(input_path, output_path)
        logger.debug("Running: %s", " ".join(cmd))
        try:
            result = subprocess.run(
                cmd,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                timeout=self.timeout_s,
            )
        except FileNotFoundError as e:
            raise ConversionError(f"kepubify executable not found: {self.executable}") from e
        except subprocess.TimeoutExpired as e:
            raise ConversionError(
                f"kepubify conversion timed out after {self.timeout_s}s"
            ) from e

        if result.returncode != 0:
            detail = (result.stderr or result.stdout or "").strip()[:500]
            raise ConversionError(
                f"kepubify conversion failed (exit {result.returncode}): {detail or 'no output'}"
            )

        if not os.path.isfile(output_path):
            raise ConversionError(f"kepubify conversion failed: no output at {output_path}")

        _report(on_progress, 100)


def _report(on_progress: Optional[ProgressCallback], percent: int) -> None:
    if on_progress is not None:
        on_progress(percent)
