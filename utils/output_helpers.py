# utils/output_helpers.py
"""
Output sinks for streamed text.  `OutputTarget` fans each fragment out to
the terminal and, optionally, a mirror file.  A display device is only
probed for; rendering to it is not wired.
"""
import logging
import sys
from pathlib import Path
from typing import List, Optional, TextIO, Union

logger = logging.getLogger(__name__)

DISPLAY_DEVICE_PATHS = ("/dev/spidev0.0", "/dev/spidev0.1", "/dev/fb1")


class OutputSink:
    def write(self, text: str) -> None:
        raise NotImplementedError

    def close(self) -> None:
        pass


class TerminalOutput(OutputSink):
    def __init__(self, stream: Optional[TextIO] = None) -> None:
        self.stream = stream or sys.stdout

    def write(self, text: str) -> None:
        self.stream.write(text)
        self.stream.flush()


class FileOutput(OutputSink):
    """Truncates the file on open and flushes after every fragment."""

    def __init__(self, path: Union[str, Path]) -> None:
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._fh = self.path.open("w", encoding="utf-8")

    def write(self, text: str) -> None:
        self._fh.write(text)
        self._fh.flush()

    def close(self) -> None:
        if not self._fh.closed:
            self._fh.close()


class OutputTarget(OutputSink):
    def __init__(self, sinks: List[OutputSink]) -> None:
        self.sinks = sinks

    @classmethod
    def autodetect(cls, mirror_file: Optional[Union[str, Path]] = None,
                   stream: Optional[TextIO] = None) -> "OutputTarget":
        if has_display_device():
            logger.warning("SPI display device detected; display rendering not wired yet, using terminal output.")

        sinks: List[OutputSink] = [TerminalOutput(stream)]
        if mirror_file:
            sinks.append(FileOutput(mirror_file))
            logger.info(f"Mirroring output to {mirror_file}")
        return cls(sinks)

    def write(self, text: str) -> None:
        for s in self.sinks:
            s.write(text)

    def close(self) -> None:
        for s in self.sinks:
            s.close()

    def __enter__(self) -> "OutputTarget":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


def has_display_device(paths=DISPLAY_DEVICE_PATHS) -> bool:
    return any(Path(p).exists() for p in paths)
