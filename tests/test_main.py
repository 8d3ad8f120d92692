"""
Tests for application wiring.
"""

import json
from datetime import timedelta

import pytest

from conftest import T0, FakeCatalog, entry
from streamarchiver.config import load_config
from streamarchiver.main import ArchiverApp
from streamarchiver.models import placeholder_id
from streamarchiver.reconciler import ReconcileRequest, ReconcileStatus, Reconciler


@pytest.fixture
def config(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text(f"""
twitch:
  client_id: id
  client_secret: secret
  channels: [alpha, beta]
processing:
  data_dir: {tmp_path / 'vods'}
  max_concurrent_downloads: 2
chat:
  enabled: false
  export_dir: {tmp_path / 'chat'}
database:
  url: sqlite+aiosqlite:///{tmp_path / 'archiver.db'}
logging:
  file: ""
""", encoding="utf-8")
    return load_config(str(path))


class TestArchiverApp:
    """Test ArchiverApp construction."""

    @pytest.mark.asyncio
    async def test_one_pipeline_per_channel(self, config):
        app = ArchiverApp(config)
        try:
            assert set(app.orchestrators) == {"alpha", "beta"}
            assert set(app.pollers) == {"alpha", "beta"}
            assert app.publisher is None
            assert app.pollers["alpha"].chat_recorder is None
        finally:
            await app.db.dispose()

    @pytest.mark.asyncio
    async def test_download_slots_are_shared(self, config):
        app = ArchiverApp(config)
        try:
            assert app.limiter.capacity == 2
            assert app.orchestrators["alpha"].limiter is app.limiter
            assert app.orchestrators["beta"].limiter is app.limiter
        finally:
            await app.db.dispose()

    @pytest.mark.asyncio
    async def test_stop_sets_event(self, config):
        app = ArchiverApp(config)
        try:
            app.stop()
            assert app._stop_event.is_set()
        finally:
            await app.db.dispose()

    @pytest.mark.asyncio
    async def test_chat_exported_after_merge(self, config, tmp_path):
        app = ArchiverApp(config)
        await app.db.create_all()
        try:
            start = T0
            ph = placeholder_id(start)
            await app.store.create_placeholder("alpha", ph, "LIVE: test", start)
            await app.store.add_chat_message("alpha", ph, "viewer", "hi", start + timedelta(seconds=40), 40.0)
            app.reconciler = Reconciler(
                app.db,
                FakeCatalog([entry("v9", start + timedelta(seconds=10))]),
                initial_delay=0,
                clock=lambda: start,
            )

            outcome = await app._reconcile(ReconcileRequest("alpha", ph, start, start))

            assert outcome.status == ReconcileStatus.MERGED
            exported = json.loads((tmp_path / "chat" / "alpha" / "v9.chat.json").read_text(encoding="utf-8"))
            assert exported[0]["message"] == "hi"
            assert exported[0]["rel_timestamp"] == 30.0
        finally:
            await app.db.dispose()
