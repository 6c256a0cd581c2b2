"""OCR extraction using the Tesseract command-line tool.

Frames are downscaled according to the recognition mode, written to a
temporary PNG and passed to ``tesseract``. Recognized text regions are
returned one per line in Tesseract's reading order.

OCR is best-effort enrichment: any failure is logged and reported as "no
text" (None), never raised to the caller.

Modes:
    accurate: frames capped at 1920x1080, LSTM engine (default)
    fast: frames capped at 1280x720 and converted to grayscale
"""

import logging
import shutil
import subprocess
import tempfile
from pathlib import Path
from typing import Callable, Optional

from PIL import Image

from .errors import ExtractionFailure
from .models import OcrMode

logger = logging.getLogger(__name__)

MAX_SIZE = {
    OcrMode.ACCURATE: (1920, 1080),
    OcrMode.FAST: (1280, 720),
}


class TextExtractor:
    """Runs Tesseract over in-memory frames.

    Attributes:
        tesseract_cmd: Executable name or path
        timeout: Seconds before a single recognition run is abandoned
    """

    def __init__(
        self,
        mode_provider: Optional[Callable[[], OcrMode]] = None,
        tesseract_cmd: str = "tesseract",
        timeout: float = 30,
    ):
        """
        Args:
            mode_provider: Returns the recognition mode; consulted once per
                ``extract`` call so the mode can change while capturing.
                Defaults to accurate.
            tesseract_cmd: Tesseract executable
            timeout: Per-call timeout for the Tesseract process
        """
        self.mode_provider = mode_provider or (lambda: OcrMode.ACCURATE)
        self.tesseract_cmd = tesseract_cmd
        self.timeout = timeout

    def is_available(self) -> bool:
        return shutil.which(self.tesseract_cmd) is not None

    def extract(self, image: Image.Image) -> Optional[str]:
        """Extract text from ``image``.

        Returns:
            Recognized regions joined with newlines, or None if nothing was
            recognized or recognition failed.
        """
        mode = OcrMode.parse(self.mode_provider())
        try:
            raw = self._run_tesseract(image, mode)
        except ExtractionFailure as e:
            logger.warning(f"OCR extraction failed: {e}")
            return None

        lines = [line.strip() for line in raw.splitlines()]
        text = "\n".join(line for line in lines if line)
        if not text:
            logger.debug(f"OCR ({mode.value}) recognized no text")
            return None
        logger.debug(f"OCR ({mode.value}) recognized {len(text)} characters")
        return text

    def _prepare_image(self, image: Image.Image, mode: OcrMode) -> Image.Image:
        """Downscale to the mode's size cap, preserving aspect ratio."""
        max_width, max_height = MAX_SIZE[mode]
        img = image
        if img.width > max_width:
            ratio = max_width / img.width
            img = img.resize((max_width, max(1, int(img.height * ratio))), Image.Resampling.LANCZOS)
        if img.height > max_height:
            ratio = max_height / img.height
            img = img.resize((max(1, int(img.width * ratio)), max_height), Image.Resampling.LANCZOS)
        if mode is OcrMode.FAST:
            img = img.convert("L")
        elif img.mode not in ("RGB", "L"):
            img = img.convert("RGB")
        return img

    def _run_tesseract(self, image: Image.Image, mode: OcrMode) -> str:
        tmp_path = None
        try:
            prepared = self._prepare_image(image, mode)
            with tempfile.NamedTemporaryFile(suffix=".png", delete=False) as tmp:
                tmp_path = tmp.name
            prepared.save(tmp_path, "PNG")

            args = [self.tesseract_cmd, tmp_path, "stdout", "--psm", "3"]
            if mode is OcrMode.ACCURATE:
                args += ["--oem", "1"]

            result = subprocess.run(
                args,
                capture_output=True,
                text=True,
                timeout=self.timeout,
            )
        except subprocess.TimeoutExpired as e:
            raise ExtractionFailure(f"Tesseract timed out after {self.timeout}s") from e
        except FileNotFoundError as e:
            raise ExtractionFailure("Tesseract not installed or not in PATH") from e
        except (OSError, ValueError) as e:
            raise ExtractionFailure(f"Could not prepare frame for OCR: {e}") from e
        finally:
            if tmp_path:
                Path(tmp_path).unlink(missing_ok=True)

        if result.returncode != 0:
            raise ExtractionFailure(f"Tesseract returned {result.returncode}: {result.stderr.strip()}")
        return result.stdout
