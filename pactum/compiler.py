"""PDF compilation through an external document compiler (pandoc)."""

from __future__ import annotations

import logging
import pathlib
import subprocess
import tempfile
from typing import List, Union

from pactum.errors import CompilerError

logger = logging.getLogger(__name__)

DEFAULT_FONT = "Helvetica"
DEFAULT_PDF_ENGINE = "tectonic"


class DocumentCompiler:
    def __init__(self, executable: str = "pandoc", font: str = DEFAULT_FONT, pdf_engine: str = DEFAULT_PDF_ENGINE):
        self.executable = executable
        self.font = font
        self.pdf_engine = pdf_engine

    @classmethod
    def from_config(cls, config) -> "DocumentCompiler":
        return cls(
            executable=config.tools.pandoc.get(),
            font=config.compiler.font.get(),
            pdf_engine=config.compiler.pdf_engine.get(),
        )

    def command(self, input_path: pathlib.Path, output_path: pathlib.Path) -> List[str]:
        return [
            self.executable,
            str(input_path),
            "-V",
            f'mainfont="{self.font}"',
            f"--pdf-engine={self.pdf_engine}",
            "-o",
            str(output_path),
        ]

    def compile(self, rendered: Union[str, bytes], output_path: Union[str, pathlib.Path]) -> pathlib.Path:
        """Compile rendered HTML into ``output_path``. The scratch input is always removed."""
        output_path = pathlib.Path(output_path)
        data = rendered.encode("utf-8") if isinstance(rendered, str) else rendered
        with tempfile.TemporaryDirectory(prefix="pactum-compile-") as tmp:
            scratch = pathlib.Path(tmp) / "contract.html"
            scratch.write_bytes(data)
            cmd = self.command(scratch, output_path)
            logger.debug(f"Running {' '.join(cmd)}")
            try:
                proc = subprocess.run(cmd, capture_output=True, text=True, check=False)
            except FileNotFoundError as exc:
                raise CompilerError(f"document compiler not found: {self.executable}") from exc
        if proc.returncode != 0:
            raise CompilerError(
                f"{self.executable} exited with status {proc.returncode}: {(proc.stderr or proc.stdout or '').strip()}"
            )
        logger.info(f"Compiled {output_path}")
        return output_path
