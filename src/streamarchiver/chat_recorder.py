"""
Live chat recorder: Twitch IRC over WebSocket (aiohttp).

Every PRIVMSG is stored as a ChatMessage attached to whatever recording id
the recorder was started with, with rel_timestamp measured from that
recording's nominal start.
"""

import asyncio
import random
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, Optional

import aiohttp

from .errors import StorageError
from .logger import get_channel_logger
from .models import utc_now
from .store import RecordingStore


IRC_URL = "wss://irc-ws.chat.twitch.tv:443"


@dataclass
class IRCMessage:
    """One parsed IRC line."""
    command: str
    tags: Dict[str, str] = field(default_factory=dict)
    prefix: str = ""
    params: list = field(default_factory=list)
    trailing: str = ""
    
    @property
    def nick(self) -> str:
        return self.prefix.split('!', 1)[0] if self.prefix else ""


def _unescape_tag(value: str) -> str:
    out = []
    chars = iter(value)
    for ch in chars:
        if ch != '\\':
            out.append(ch)
            continue
        nxt = next(chars, '')
        out.append({':': ';', 's': ' ', 'r': '\r', 'n': '\n', '\\': '\\'}.get(nxt, nxt))
    return ''.join(out)


def parse_irc_line(line: str) -> Optional[IRCMessage]:
    """Parse an IRCv3 line with optional tags. Returns None for blank input."""
    line = line.rstrip('\r\n')
    if not line:
        return None
    
    tags = {}
    if line.startswith('@'):
        raw_tags, _, line = line[1:].partition(' ')
        for item in raw_tags.split(';'):
            key, _, value = item.partition('=')
            tags[key] = _unescape_tag(value)
    
    prefix = ""
    if line.startswith(':'):
        prefix, _, line = line[1:].partition(' ')
    
    trailing = ""
    if ' :' in line:
        line, trailing = line.split(' :', 1)
    elif line.startswith(':'):
        line, trailing = "", line[1:]
    
    parts = line.split()
    if not parts:
        return None
    return IRCMessage(command=parts[0].upper(), tags=tags, prefix=prefix, params=parts[1:], trailing=trailing)


class TwitchChatRecorder:
    """
    Records one channel's chat while a stream is live.
    
    Reconnects on dropped connections until cancelled. Without configured
    credentials it joins anonymously (read-only).
    """
    
    def __init__(
        self,
        store: RecordingStore,
        channel: str,
        bot_username: str = "",
        oauth_token: str = "",
        clock: Callable[[], datetime] = utc_now,
        url: str = IRC_URL
    ):
        self.store = store
        self.channel = channel.lower()
        self.bot_username = bot_username
        self.oauth_token = oauth_token
        self.url = url
        self._clock = clock
        self._logger = get_channel_logger(self.channel, 'chat')
        self.messages_recorded = 0
    
    def _credentials(self) -> tuple:
        token = self.oauth_token.strip()
        if self.bot_username and token:
            if not token.lower().startswith('oauth:'):
                token = f"oauth:{token}"
            return self.bot_username.lower(), token
        # Anonymous read-only login
        return f"justinfan{random.randint(10000, 99999)}", "SCHMOOPIIE"
    
    async def start(self, attached_id: str, nominal_start: datetime) -> None:
        """
        Record chat into `attached_id` until cancelled.
        
        Args:
            attached_id: Recording id the messages belong to (placeholder or real).
            nominal_start: That recording's start; rel_timestamp is measured from it.
        """
        logger = self._logger.for_recording(attached_id)
        backoff = 1
        logger.info("💬 Chat recording started")
        
        try:
            while True:
                try:
                    await self._run_connection(attached_id, nominal_start)
                    backoff = 1
                    logger.warning("Chat connection closed, reconnecting...")
                except (aiohttp.ClientError, asyncio.TimeoutError, ConnectionError) as e:
                    logger.warning(f"Chat connection error: {e}, reconnecting in {backoff}s")
                await asyncio.sleep(backoff)
                backoff = min(backoff * 2, 60)
        except asyncio.CancelledError:
            logger.info(f"💬 Chat recording stopped ({self.messages_recorded} messages)")
            raise
    
    async def _run_connection(self, attached_id: str, nominal_start: datetime) -> None:
        nick, password = self._credentials()
        
        async with aiohttp.ClientSession() as session:
            async with session.ws_connect(self.url, heartbeat=60) as ws:
                await ws.send_str("CAP REQ :twitch.tv/tags twitch.tv/commands")
                await ws.send_str(f"PASS {password}")
                await ws.send_str(f"NICK {nick}")
                await ws.send_str(f"JOIN #{self.channel}")
                
                async for msg in ws:
                    if msg.type == aiohttp.WSMsgType.TEXT:
                        for line in msg.data.split('\r\n'):
                            reply = await self.handle_line(line, attached_id, nominal_start)
                            if reply:
                                await ws.send_str(reply)
                    elif msg.type in (aiohttp.WSMsgType.CLOSED, aiohttp.WSMsgType.ERROR):
                        break
    
    async def handle_line(self, line: str, attached_id: str, nominal_start: datetime) -> Optional[str]:
        """
        Process one IRC line.
        
        Returns:
            A line to send back (PONG), or None.
        """
        message = parse_irc_line(line)
        if message is None:
            return None
        
        if message.command == 'PING':
            return f"PONG :{message.trailing or 'tmi.twitch.tv'}"
        
        if message.command == 'NOTICE' and 'authentication failed' in message.trailing.lower():
            self._logger.error("Chat login failed: check bot_username and oauth_token")
            return None
        
        if message.command != 'PRIVMSG':
            return None
        
        observed = self._clock()
        author = message.tags.get('display-name') or message.nick
        try:
            await self.store.add_chat_message(
                channel=self.channel,
                recording_id=attached_id,
                author=author,
                text=message.trailing,
                abs_timestamp=observed,
                rel_timestamp=(observed - nominal_start).total_seconds(),
                badges=message.tags.get('badges', ''),
                color=message.tags.get('color', ''),
            )
            self.messages_recorded += 1
        except StorageError as e:
            self._logger.critical(f"Failed to store chat message: {e}")
        return None
