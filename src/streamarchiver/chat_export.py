"""
Chat export: writes a recording's chat as a JSON replay file.
"""

import json
from pathlib import Path
from typing import Optional

import aiofiles

from .errors import StorageError
from .logger import get_channel_logger
from .store import RecordingStore


class ChatExporter:
    """
    Dumps chat rows to `<export_dir>/<channel>/<recording_id>.chat.json`.
    
    Messages are ordered by their offset into the recording, so a player
    can replay them next to the video.
    """
    
    def __init__(self, store: RecordingStore, export_dir: str = "./data/chat"):
        self.store = store
        self.export_dir = Path(export_dir)
    
    def export_path(self, channel: str, recording_id: str) -> Path:
        return self.export_dir / channel / f"{recording_id}.chat.json"
    
    async def export(
        self,
        channel: str,
        recording_id: str,
        start: Optional[float] = None,
        end: Optional[float] = None
    ) -> Path:
        """
        Write the chat of one recording, optionally limited to [start, end] seconds.
        
        Returns:
            Path of the written file.
            
        Raises:
            StorageError if the rows could not be read or the file written.
        """
        logger = get_channel_logger(channel, 'chat_export').for_recording(recording_id)
        messages = await self.store.chat_messages(channel, recording_id, start=start, end=end)
        
        data = [
            {
                'username': m.author,
                'message': m.text,
                'abs_timestamp': m.abs_timestamp.isoformat(),
                'rel_timestamp': m.rel_timestamp,
                'badges': m.badges,
                'color': m.color,
            }
            for m in messages
        ]
        
        path = self.export_path(channel, recording_id)
        tmp_file = path.with_suffix(path.suffix + ".tmp")
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            async with aiofiles.open(tmp_file, 'w', encoding='utf-8') as f:
                await f.write(json.dumps(data, indent=2, ensure_ascii=False))
            tmp_file.replace(path)
        except OSError as e:
            raise StorageError(f"chat export failed: {e}") from e
        
        logger.info(f"💬 Exported {len(data)} chat message(s) to {path}")
        return path
