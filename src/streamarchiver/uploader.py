"""
Publish executor: republishes downloaded recordings to a Telegram channel
using Telethon.
"""

import asyncio
import json
from pathlib import Path
from typing import Optional

from telethon import TelegramClient
from telethon.errors import FloodWaitError, RPCError
from telethon.tl.types import DocumentAttributeVideo

from .errors import PublishError
from .logger import get_logger
from .models import PublishMetadata


def format_duration(seconds: int) -> str:
    hours, rest = divmod(max(0, int(seconds)), 3600)
    minutes, secs = divmod(rest, 60)
    return f"{hours:02d}:{minutes:02d}:{secs:02d}"


def message_link(channel_id: int, message_id: int) -> str:
    """Public link to a message in a private channel (t.me/c form)."""
    internal = str(abs(int(channel_id)))
    # Bot-API style ids carry a -100 prefix that t.me links drop
    if internal.startswith("100") and len(internal) > 10:
        internal = internal[3:]
    return f"https://t.me/c/{internal}/{message_id}"


class TelegramPublisher:
    """
    Uploads recordings to Telegram using a Telethon userbot.
    
    Features:
    - Premium account detection for 4GB uploads
    - Streamable video attributes and thumbnail via ffprobe/ffmpeg
    - Returns a t.me link to the posted message
    
    Retries are up to the caller; each publish() is a single attempt.
    """
    
    def __init__(
        self,
        api_id: int,
        api_hash: str,
        channel_id: int,
        session_name: str = "stream_archiver"
    ):
        """
        Initialize Telegram publisher.
        
        Args:
            api_id: Telegram API ID.
            api_hash: Telegram API hash.
            channel_id: Target channel ID for uploads.
            session_name: Session file name.
        """
        self._logger = get_logger('uploader')
        self.api_id = api_id
        self.api_hash = api_hash
        self.channel_id = channel_id
        self.session_name = session_name
        
        self._client: Optional[TelegramClient] = None
        self._is_premium: bool = False
    
    async def connect(self) -> bool:
        """
        Connect to Telegram and check premium status.
        
        Returns:
            True if connected successfully.
        """
        try:
            self._client = TelegramClient(
                self.session_name,
                self.api_id,
                self.api_hash
            )
            await self._client.start()
            
            me = await self._client.get_me()
            self._is_premium = getattr(me, 'premium', False)
            
            self._logger.info(
                f"Connected to Telegram as {me.first_name} "
                f"({'Premium' if self._is_premium else 'Regular'} account)"
            )
            return True
            
        except (RPCError, OSError, ConnectionError) as e:
            self._logger.error(f"Failed to connect: {e}")
            return False
    
    async def disconnect(self):
        """Disconnect from Telegram."""
        if self._client:
            await self._client.disconnect()
            self._client = None
    
    @property
    def is_premium(self) -> bool:
        return self._is_premium
    
    @property
    def max_file_size_mb(self) -> int:
        """Get maximum file size in MB based on account type."""
        return 4000 if self._is_premium else 2000
    
    def format_caption(self, metadata: PublishMetadata) -> str:
        date_str = metadata.start.strftime('%d.%m.%Y') if metadata.start else ""
        lines = [
            f"Channel: **{metadata.channel}**",
            f"Date: **{date_str}**",
            f"Stream: **{metadata.title}**",
        ]
        if metadata.duration_seconds:
            lines.append(f"Duration: **{format_duration(metadata.duration_seconds)}**")
        return "\n".join(lines)
    
    async def _get_video_metadata(self, file_path: str) -> dict:
        """Get video duration, width, height using ffprobe."""
        try:
            process = await asyncio.create_subprocess_exec(
                'ffprobe', '-v', 'error',
                '-select_streams', 'v:0',
                '-show_entries', 'stream=width,height,duration',
                '-show_entries', 'format=duration',
                '-of', 'json',
                file_path,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE
            )
            stdout, _ = await process.communicate()
            data = json.loads(stdout.decode() or '{}')
            
            duration = float((data.get('format') or {}).get('duration') or 0)
            streams = data.get('streams') or [{}]
            return {
                'duration': int(duration or float(streams[0].get('duration') or 0)),
                'width': streams[0].get('width', 1920),
                'height': streams[0].get('height', 1080),
            }
        except (OSError, ValueError) as e:
            self._logger.warning(f"Failed to get video metadata: {e}")
            return {'duration': 0, 'width': 1920, 'height': 1080}
    
    async def _generate_thumbnail(self, file_path: str, duration: int) -> Optional[str]:
        """Grab a frame at 10% of the video (or 5 seconds if duration unknown)."""
        thumb_path = f"{file_path}.thumb.jpg"
        seek_time = max(5, int(duration * 0.1)) if duration > 0 else 5
        
        try:
            process = await asyncio.create_subprocess_exec(
                'ffmpeg', '-y',
                '-ss', str(seek_time),
                '-i', file_path,
                '-vframes', '1',
                '-vf', 'scale=320:-1',
                '-q:v', '5',
                thumb_path,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE
            )
            await asyncio.wait_for(process.communicate(), timeout=30)
            
            if process.returncode == 0 and Path(thumb_path).exists():
                return thumb_path
            return None
        except (OSError, asyncio.TimeoutError) as e:
            self._logger.warning(f"Failed to generate thumbnail: {e}")
            return None
    
    async def publish(self, local_path: str, metadata: PublishMetadata) -> str:
        """
        Upload one file with a caption.
        
        Returns:
            t.me link to the posted message.
            
        Raises:
            PublishError; fatal when the file is missing or too large.
        """
        if not self._client:
            raise PublishError("Not connected to Telegram")
        
        path = Path(local_path)
        if not path.exists():
            raise PublishError(f"File not found: {local_path}", fatal=True)
        
        file_size_mb = path.stat().st_size / (1024 * 1024)
        if file_size_mb > self.max_file_size_mb:
            raise PublishError(
                f"File too large for Telegram: {file_size_mb:.0f} MB > {self.max_file_size_mb} MB",
                fatal=True,
            )
        
        self._logger.info(f"Uploading {path.name} ({file_size_mb:.1f} MB)...")
        video = await self._get_video_metadata(local_path)
        thumb_path = await self._generate_thumbnail(local_path, video['duration'])
        
        try:
            message = await self._client.send_file(
                self.channel_id,
                local_path,
                caption=self.format_caption(metadata),
                supports_streaming=True,
                attributes=[DocumentAttributeVideo(
                    duration=video['duration'],
                    w=video['width'],
                    h=video['height'],
                    supports_streaming=True
                )],
                thumb=thumb_path
            )
        except FloodWaitError as e:
            raise PublishError(f"Telegram rate limit (flood wait {e.seconds}s)") from e
        except RPCError as e:
            raise PublishError(f"Telegram error: {e}") from e
        finally:
            if thumb_path and Path(thumb_path).exists():
                Path(thumb_path).unlink()
        
        self._logger.info(f"Uploaded: {path.name}")
        return message_link(self.channel_id, message.id)
