"""
Catalog source: the channel's archived recordings on Twitch.
"""

from typing import List

from .logger import get_channel_logger
from .store import CatalogEntry, RecordingStore
from .twitch_api import TwitchAPI, TwitchAPIError


class TwitchCatalog:
    """
    Lists a channel's recent archived broadcasts.
    
    Always returns the latest page; callers that need older history would
    have to walk TwitchAPI.list_videos cursors themselves.
    """
    
    def __init__(self, api: TwitchAPI, page_size: int = 20):
        self.api = api
        self.page_size = page_size
    
    async def list_recordings(self, channel: str) -> List[CatalogEntry]:
        user_id = await self.api.get_user_id(channel)
        if not user_id:
            raise TwitchAPIError(f"Twitch user not found: {channel}")
        
        videos, _cursor = await self.api.list_videos(user_id, first=self.page_size)
        return [
            CatalogEntry(
                id=v.id,
                title=v.title,
                start=v.created_at,
                duration_seconds=v.duration_seconds,
            )
            for v in videos
        ]
    
    async def discover(self, store: RecordingStore, channel: str) -> int:
        """Insert recordings the store hasn't seen yet; returns how many."""
        logger = get_channel_logger(channel, 'catalog')
        entries = await self.list_recordings(channel)
        inserted = await store.add_discovered(channel, entries)
        if inserted:
            logger.info(f"📼 Discovered {inserted} new recording(s)")
        else:
            logger.debug(f"No new recordings ({len(entries)} listed)")
        return inserted
