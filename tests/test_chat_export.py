"""
Tests for chat export.
"""

import json
from datetime import timedelta

import pytest

from conftest import T0
from streamarchiver.chat_export import ChatExporter


async def seed_chat(store):
    for rel, text in ((30.0, "second"), (5.0, "first"), (120.0, "third")):
        await store.add_chat_message(
            "chan", "v1", "viewer", text, T0 + timedelta(seconds=rel), rel,
            badges="subscriber/1", color="#00FF00",
        )


class TestChatExporter:
    """Test ChatExporter.export()."""

    @pytest.mark.asyncio
    async def test_writes_replay_file(self, store, tmp_path):
        await seed_chat(store)
        exporter = ChatExporter(store, str(tmp_path / "chat"))

        path = await exporter.export("chan", "v1")

        assert path == tmp_path / "chat" / "chan" / "v1.chat.json"
        data = json.loads(path.read_text(encoding="utf-8"))
        assert [m["message"] for m in data] == ["first", "second", "third"]
        assert data[0] == {
            "username": "viewer",
            "message": "first",
            "abs_timestamp": (T0 + timedelta(seconds=5)).isoformat(),
            "rel_timestamp": 5.0,
            "badges": "subscriber/1",
            "color": "#00FF00",
        }
        assert not path.with_suffix(".json.tmp").exists()

    @pytest.mark.asyncio
    async def test_window(self, store, tmp_path):
        await seed_chat(store)
        exporter = ChatExporter(store, str(tmp_path))

        path = await exporter.export("chan", "v1", start=10, end=120)

        data = json.loads(path.read_text(encoding="utf-8"))
        assert [m["message"] for m in data] == ["second", "third"]

    @pytest.mark.asyncio
    async def test_empty_chat(self, store, tmp_path):
        path = await ChatExporter(store, str(tmp_path)).export("chan", "nothing")

        assert json.loads(path.read_text(encoding="utf-8")) == []

    @pytest.mark.asyncio
    async def test_overwrites_previous_export(self, store, tmp_path):
        exporter = ChatExporter(store, str(tmp_path))
        await exporter.export("chan", "v1")
        await seed_chat(store)

        path = await exporter.export("chan", "v1")

        assert len(json.loads(path.read_text(encoding="utf-8"))) == 3
