"""
Office-to-PDF conversion through a headless LibreOffice.

The produced PDF is handed to the PDF renderer as if it were the original
upload. No output file, a missing converter binary or a timeout are all fatal
for the job.
"""

from __future__ import annotations

import logging
import shutil
import subprocess
from pathlib import Path

from .errors import RenderError

logger = logging.getLogger(__name__)


class OfficeBridge:
    def __init__(self, converter: str = "soffice", timeout_seconds: float = 120) -> None:
        self.converter = converter
        self.timeout_seconds = timeout_seconds

    def convert(self, source: Path, output_dir: Path) -> Path:
        binary = shutil.which(self.converter)
        if binary is None:
            raise RenderError(f"Office converter '{self.converter}' not found in PATH")

        output_dir.mkdir(parents=True, exist_ok=True)
        # A private profile lets several workers convert at the same time
        profile_dir = output_dir / "lo-profile"
        command = [
            binary,
            f"-env:UserInstallation={profile_dir.resolve().as_uri()}",
            "--headless",
            "--convert-to",
            "pdf",
            "--outdir",
            str(output_dir),
            str(source),
        ]
        logger.info(f"Converting {source.name} to PDF")
        try:
            result = subprocess.run(
                command,
                capture_output=True,
                text=True,
                timeout=self.timeout_seconds,
            )
        except subprocess.TimeoutExpired as exc:
            raise RenderError(f"Office conversion of {source.name} timed out after {self.timeout_seconds}s") from exc

        pdf_path = output_dir / f"{source.stem}.pdf"
        if not pdf_path.exists() or pdf_path.stat().st_size == 0:
            raise RenderError(
                f"Office conversion of {source.name} produced no PDF "
                f"(exit {result.returncode}): {result.stderr.strip()[:500]}"
            )
        return pdf_path
