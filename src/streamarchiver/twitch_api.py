"""
Twitch Helix API client for Stream Archiver.
Handles app authentication, live status and archived video listing.
"""

import re
import aiohttp
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Tuple

from .errors import ArchiverError, AuthError
from .logger import get_logger


class TwitchAPIError(ArchiverError):
    """Helix request failed; the message carries the HTTP status."""


@dataclass
class StreamData:
    """Live stream information from Twitch API."""
    stream_id: str
    user_id: str
    user_login: str
    user_name: str
    game_name: str
    title: str
    viewer_count: int
    started_at: datetime


@dataclass
class VideoData:
    """Archived broadcast (VOD) from Twitch API."""
    id: str
    user_id: str
    title: str
    created_at: datetime
    duration_seconds: int
    url: str
    stream_id: str = ""


_DURATION_RE = re.compile(r'^(?:(\d+)h)?(?:(\d+)m)?(?:(\d+)s)?$')


def parse_twitch_duration(value: str) -> int:
    """
    Convert a Helix duration like "3h15m42s" to seconds.
    
    Unparseable values give 0.
    """
    match = _DURATION_RE.match((value or "").strip())
    if not match or not any(match.groups()):
        return 0
    hours, minutes, seconds = (int(g) if g else 0 for g in match.groups())
    return hours * 3600 + minutes * 60 + seconds


def parse_twitch_time(value: str) -> datetime:
    """Helix RFC3339 timestamp to aware UTC datetime."""
    return datetime.fromisoformat(value.replace('Z', '+00:00')).astimezone(timezone.utc)


class TwitchAPI:
    """
    Twitch Helix API client.
    
    Features:
    - Client Credentials authentication
    - Automatic token refresh
    - Stream status checking
    - Archived video listing with cursor
    """
    
    BASE_URL = "https://api.twitch.tv/helix"
    AUTH_URL = "https://id.twitch.tv/oauth2/token"
    
    def __init__(self, client_id: str, client_secret: str):
        """
        Initialize Twitch API client.
        
        Args:
            client_id: Twitch application Client ID.
            client_secret: Twitch application Client Secret.
        """
        self.client_id = client_id
        self.client_secret = client_secret
        
        self._app_token: Optional[str] = None
        self._token_expires: Optional[datetime] = None
        self._session: Optional[aiohttp.ClientSession] = None
        self._user_ids: Dict[str, str] = {}
        self._logger = get_logger('twitch_api')
    
    async def connect(self) -> bool:
        """
        Initialize session and authenticate.
        
        Returns:
            True if connected successfully.
        """
        try:
            if self._session is None:
                self._session = aiohttp.ClientSession(
                    timeout=aiohttp.ClientTimeout(total=30)
                )
            await self._refresh_token()
            self._logger.info("Connected to Twitch API")
            return True
        except (aiohttp.ClientError, ArchiverError) as e:
            self._logger.error(f"Failed to connect: {e}")
            return False
    
    async def disconnect(self) -> None:
        """Close session."""
        if self._session:
            await self._session.close()
            self._session = None
    
    async def _refresh_token(self) -> None:
        """Get or refresh app access token."""
        async with self._session.post(
            self.AUTH_URL,
            params={
                'client_id': self.client_id,
                'client_secret': self.client_secret,
                'grant_type': 'client_credentials'
            }
        ) as resp:
            if resp.status in (400, 401, 403):
                raise AuthError(f"Twitch auth rejected: {resp.status}")
            if resp.status != 200:
                raise TwitchAPIError(f"Twitch auth failed: {resp.status}")
            
            data = await resp.json()
            self._app_token = data['access_token']
            expires_in = data.get('expires_in', 3600)
            self._token_expires = datetime.now(timezone.utc) + timedelta(seconds=expires_in - 60)
            self._logger.debug("Got new app access token")
    
    async def _ensure_token(self) -> None:
        if self._session is None:
            self._session = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=30))
        if not self._app_token or datetime.now(timezone.utc) >= self._token_expires:
            await self._refresh_token()
    
    def _headers(self) -> dict:
        return {
            'Client-ID': self.client_id,
            'Authorization': f'Bearer {self._app_token}'
        }
    
    async def _get(self, path: str, params) -> dict:
        """GET a Helix endpoint, retrying once with a fresh token on 401."""
        await self._ensure_token()
        
        for attempt in range(2):
            async with self._session.get(
                f"{self.BASE_URL}/{path}",
                headers=self._headers(),
                params=params
            ) as resp:
                if resp.status == 401 and attempt == 0:
                    # Token revoked or expired early
                    self._app_token = None
                    await self._refresh_token()
                    continue
                if resp.status in (401, 403):
                    raise AuthError(f"Twitch API {path}: {resp.status}")
                if resp.status != 200:
                    text = await resp.text()
                    raise TwitchAPIError(f"Twitch API {path}: {resp.status} {text[:200]}")
                return await resp.json()
        
        raise TwitchAPIError(f"Twitch API {path}: unauthorized after token refresh")
    
    async def get_stream(self, channel: str) -> Optional[StreamData]:
        """
        Get live stream info for a channel.
        
        Args:
            channel: Twitch username (login).
            
        Returns:
            StreamData if live, None if offline.
            
        Raises:
            TwitchAPIError, AuthError or aiohttp.ClientError when the status
            could not be determined.
        """
        data = await self._get('streams', {'user_login': channel})
        streams = data.get('data', [])
        if not streams:
            return None
        
        s = streams[0]
        return StreamData(
            stream_id=s['id'],
            user_id=s['user_id'],
            user_login=s['user_login'],
            user_name=s.get('user_name', s['user_login']),
            game_name=s.get('game_name', 'Unknown'),
            title=s.get('title', ''),
            viewer_count=s.get('viewer_count', 0),
            started_at=parse_twitch_time(s['started_at']),
        )
    
    async def get_user_id(self, channel: str) -> Optional[str]:
        """Broadcaster id for a login, cached for the client's lifetime."""
        channel = channel.lower()
        if channel in self._user_ids:
            return self._user_ids[channel]
        
        data = await self._get('users', {'login': channel})
        users = data.get('data', [])
        if not users:
            return None
        
        self._user_ids[channel] = users[0]['id']
        return self._user_ids[channel]
    
    async def list_videos(
        self,
        user_id: str,
        after: Optional[str] = None,
        first: int = 20
    ) -> Tuple[List[VideoData], Optional[str]]:
        """
        One page of a broadcaster's archived streams, newest first.
        
        Args:
            user_id: Broadcaster id.
            after: Pagination cursor from a previous call.
            first: Page size (Helix allows up to 100).
            
        Returns:
            (videos, next cursor or None).
        """
        params = {'user_id': user_id, 'type': 'archive', 'first': str(min(max(first, 1), 100))}
        if after:
            params['after'] = after
        
        data = await self._get('videos', params)
        videos = [
            VideoData(
                id=v['id'],
                user_id=v.get('user_id', user_id),
                title=v.get('title', ''),
                created_at=parse_twitch_time(v['created_at']),
                duration_seconds=parse_twitch_duration(v.get('duration', '')),
                url=v.get('url', f"https://www.twitch.tv/videos/{v['id']}"),
                stream_id=v.get('stream_id') or '',
            )
            for v in data.get('data', [])
        ]
        cursor = (data.get('pagination') or {}).get('cursor') or None
        return videos, cursor
