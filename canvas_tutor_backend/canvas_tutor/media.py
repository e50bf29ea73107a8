import os, asyncio, logging, tempfile
from typing import Optional

logger = logging.getLogger(__name__)

def write_bytes(path: str, data: bytes):
    os.makedirs(os.path.dirname(path), exist_ok=True)
    with open(path, "wb") as f:
        f.write(data)


class FfplayNarration:
    """
    Plays narration clips through ffplay, one at a time.

    `play` returns when the clip has finished. Playback errors are logged
    and end the clip early so the player never waits on broken audio.
    Cancelling `play` (or calling `stop`) kills the ffplay process.
    """

    def __init__(self, binary: str = "ffplay"):
        self.binary = binary
        self._proc: Optional[asyncio.subprocess.Process] = None
        self._tmp_dir = os.path.join(tempfile.gettempdir(), "canvas-tutor")

    async def play(self, audio: bytes) -> None:
        fd, path = tempfile.mkstemp(suffix=".mp3", dir=self._ensure_tmp_dir())
        os.close(fd)
        write_bytes(path, audio)
        try:
            self._proc = await asyncio.create_subprocess_exec(
                self.binary, "-nodisp", "-autoexit", "-loglevel", "error", path,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
            )
            _, stderr = await self._proc.communicate()
            if self._proc.returncode not in (0, None) and stderr:
                logger.error(f"ffplay exited with {self._proc.returncode}: {stderr.decode('utf-8', errors='ignore')}")
        except FileNotFoundError:
            logger.error(f"{self.binary} is not installed; skipping narration audio")
        except asyncio.CancelledError:
            self.stop()
            raise
        finally:
            self._proc = None
            if os.path.exists(path):
                os.remove(path)

    def stop(self) -> None:
        proc = self._proc
        if proc is not None and proc.returncode is None:
            proc.kill()

    def _ensure_tmp_dir(self) -> str:
        os.makedirs(self._tmp_dir, exist_ok=True)
        return self._tmp_dir
