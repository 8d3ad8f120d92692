"""
Fetch executor: downloads archived Twitch videos with the yt-dlp CLI.
"""

import asyncio
import re
from collections import deque
from pathlib import Path
from typing import Awaitable, Callable, Dict, Optional

from .errors import FetchError
from .logger import get_channel_logger
from .models import Recording


ProgressCallback = Callable[[int, int], Awaitable[None]]

# "[download]   4.3% of ~2.19GiB at  3.05MiB/s ETA 11:22"
_PROGRESS_RE = re.compile(
    r'\[download\]\s+(?P<percent>\d+(?:\.\d+)?)%\s+of\s+~?\s*(?P<size>\d+(?:\.\d+)?)\s*(?P<unit>[KMGT]?i?B)',
    re.IGNORECASE,
)

_UNITS = {
    'b': 1,
    'kb': 1000, 'mb': 1000 ** 2, 'gb': 1000 ** 3, 'tb': 1000 ** 4,
    'kib': 1024, 'mib': 1024 ** 2, 'gib': 1024 ** 3, 'tib': 1024 ** 4,
}


def parse_progress(line: str) -> Optional[tuple]:
    """
    Parse a yt-dlp progress line.
    
    Returns:
        (bytes_downloaded, bytes_total) or None if the line isn't progress.
    """
    match = _PROGRESS_RE.search(line)
    if not match:
        return None
    multiplier = _UNITS.get(match.group('unit').lower())
    if multiplier is None:
        return None
    total = int(float(match.group('size')) * multiplier)
    done = int(total * float(match.group('percent')) / 100)
    return min(done, total), total


class YtDlpFetcher:
    """
    Downloads a recording to a stable per-recording path.
    
    Features:
    - Resumes partial downloads (`--continue` on the same output path)
    - Per-fetch bandwidth cap via `--limit-rate`
    - Progress reported from `[download]` lines
    - Subprocess is stopped when the fetch is cancelled
    """
    
    def __init__(self, data_dir: str = "./data/vods", ytdlp_path: str = "yt-dlp"):
        self.data_dir = Path(data_dir)
        self.ytdlp_path = ytdlp_path
        self._active: Dict[str, asyncio.subprocess.Process] = {}
    
    def output_path(self, recording: Recording) -> Path:
        return self.data_dir / recording.channel / f"twitch_{recording.id}.mp4"
    
    @staticmethod
    def video_url(recording: Recording) -> str:
        return f"https://www.twitch.tv/videos/{recording.id}"
    
    def build_command(self, recording: Recording, bandwidth_cap: str = "") -> list:
        cmd = [
            self.ytdlp_path,
            '--continue',
            '--newline',
            '--no-playlist',
            '--retries', '10',
            '--fragment-retries', '10',
            '--socket-timeout', '60',
            '--format', 'best',
            '--output', str(self.output_path(recording)),
        ]
        if bandwidth_cap:
            cmd.extend(['--limit-rate', bandwidth_cap])
        cmd.append(self.video_url(recording))
        return cmd
    
    async def fetch(
        self,
        recording: Recording,
        bandwidth_cap: str = "",
        on_progress: Optional[ProgressCallback] = None
    ) -> str:
        """
        Download one recording.
        
        Returns:
            Path of the downloaded file.
            
        Raises:
            FetchError with the tail of yt-dlp output on failure.
        """
        logger = get_channel_logger(recording.channel, 'fetch').for_recording(recording.id)
        output_path = self.output_path(recording)
        output_path.parent.mkdir(parents=True, exist_ok=True)
        
        cmd = self.build_command(recording, bandwidth_cap)
        logger.debug(f"Running: {' '.join(cmd)}")
        
        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT  # Merge stderr into stdout to avoid pipe deadlock
            )
        except FileNotFoundError as e:
            raise FetchError(f"yt-dlp not found: {self.ytdlp_path}") from e
        
        self._active[recording.id] = process
        output_lines = deque(maxlen=50)  # tail for error messages
        
        try:
            while True:
                line = await process.stdout.readline()
                if not line:
                    break
                text = line.decode('utf-8', errors='replace').strip()
                if not text:
                    continue
                output_lines.append(text)
                
                progress = parse_progress(text)
                if progress and on_progress:
                    await on_progress(*progress)
                elif 'error' in text.lower() or 'warning' in text.lower():
                    logger.debug(f"yt-dlp: {text}")
            
            returncode = await process.wait()
        except asyncio.CancelledError:
            logger.info("Fetch cancelled, stopping yt-dlp (partial file kept for resume)")
            await self._stop(process)
            raise
        finally:
            self._active.pop(recording.id, None)
        
        if returncode != 0:
            tail = "\n".join(list(output_lines)[-10:])
            raise FetchError(f"yt-dlp exited with code {returncode}: {tail}")
        
        if not output_path.exists():
            raise FetchError(f"yt-dlp finished but output file is missing: {output_path}")
        
        size = output_path.stat().st_size
        if on_progress:
            await on_progress(size, size)
        logger.info(f"Downloaded {size / (1024 * 1024):.1f} MB to {output_path}")
        return str(output_path)
    
    async def _stop(self, process: asyncio.subprocess.Process) -> None:
        try:
            process.terminate()
            try:
                await asyncio.wait_for(process.wait(), timeout=10)
            except asyncio.TimeoutError:
                process.kill()
                await process.wait()
        except ProcessLookupError:
            # Process already dead
            pass
    
    def active_downloads(self) -> list:
        return list(self._active.keys())
