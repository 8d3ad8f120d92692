"""
Tests for the yt-dlp fetch executor.
"""

import os
import sys
import textwrap

import pytest

from conftest import T0
from streamarchiver.downloader import YtDlpFetcher, parse_progress
from streamarchiver.errors import ErrorClass, FetchError, classify_error
from streamarchiver.models import Recording


def recording(recording_id="v1"):
    return Recording(channel="chan", id=recording_id, title="Stream", start=T0)


def fake_ytdlp(tmp_path, body):
    """Executable shell script standing in for yt-dlp."""
    script = tmp_path / "yt-dlp"
    script.write_text("#!/bin/sh\n" + textwrap.dedent(body))
    os.chmod(script, 0o755)
    return str(script)


# Writes a small file to the --output path and prints two progress lines
SUCCESS_SCRIPT = """\
out=""
while [ $# -gt 0 ]; do
  if [ "$1" = "--output" ]; then out="$2"; fi
  shift
done
echo "[info] Downloading 1 format(s): best"
echo "[download]  50.0% of 2.00KiB at 1.00KiB/s ETA 00:01"
echo "[download] 100.0% of 2.00KiB at 1.00KiB/s ETA 00:00"
printf 'video' > "$out"
exit 0
"""

FAILURE_SCRIPT = """\
echo "[twitch:vod] v1: Downloading video info"
echo "ERROR: [twitch:vod] v1: HTTP Error 503: Service Unavailable"
exit 1
"""


class TestParseProgress:
    """Test parse_progress()."""

    def test_approximate_size(self):
        done, total = parse_progress("[download]   4.3% of ~2.19GiB at  3.05MiB/s ETA 11:22")

        assert total == int(2.19 * 1024 ** 3)
        assert done == int(total * 4.3 / 100)

    def test_complete(self):
        assert parse_progress("[download] 100% of 512.00KiB in 00:00:02") == (524288, 524288)

    def test_not_progress(self):
        assert parse_progress("[download] Destination: chan/twitch_v1.mp4") is None
        assert parse_progress("[info] Downloading 1 format(s): best") is None


class TestYtDlpFetcher:
    """Test YtDlpFetcher."""

    def test_output_path_is_stable(self, tmp_path):
        fetcher = YtDlpFetcher(data_dir=str(tmp_path))

        assert fetcher.output_path(recording()) == tmp_path / "chan" / "twitch_v1.mp4"

    def test_command_resumes_and_caps_bandwidth(self, tmp_path):
        fetcher = YtDlpFetcher(data_dir=str(tmp_path))

        cmd = fetcher.build_command(recording(), bandwidth_cap="5M")

        assert "--continue" in cmd
        assert cmd[cmd.index("--limit-rate") + 1] == "5M"
        assert cmd[cmd.index("--output") + 1] == str(tmp_path / "chan" / "twitch_v1.mp4")
        assert cmd[-1] == "https://www.twitch.tv/videos/v1"

    def test_no_cap_by_default(self, tmp_path):
        cmd = YtDlpFetcher(data_dir=str(tmp_path)).build_command(recording())

        assert "--limit-rate" not in cmd

    @pytest.mark.skipif(sys.platform == "win32", reason="uses a shell script as yt-dlp")
    @pytest.mark.asyncio
    async def test_fetch_reports_progress(self, tmp_path):
        fetcher = YtDlpFetcher(data_dir=str(tmp_path / "data"), ytdlp_path=fake_ytdlp(tmp_path, SUCCESS_SCRIPT))
        updates = []

        async def on_progress(done, total):
            updates.append((done, total))

        path = await fetcher.fetch(recording(), on_progress=on_progress)

        assert path == str(tmp_path / "data" / "chan" / "twitch_v1.mp4")
        assert updates[:2] == [(1024, 2048), (2048, 2048)]
        assert updates[-1] == (5, 5)
        assert fetcher.active_downloads() == []

    @pytest.mark.skipif(sys.platform == "win32", reason="uses a shell script as yt-dlp")
    @pytest.mark.asyncio
    async def test_fetch_failure_carries_output(self, tmp_path):
        fetcher = YtDlpFetcher(data_dir=str(tmp_path / "data"), ytdlp_path=fake_ytdlp(tmp_path, FAILURE_SCRIPT))

        with pytest.raises(FetchError) as exc_info:
            await fetcher.fetch(recording())

        assert "HTTP Error 503" in str(exc_info.value)
        assert classify_error(exc_info.value) == ErrorClass.RETRYABLE

    @pytest.mark.asyncio
    async def test_missing_binary(self, tmp_path):
        fetcher = YtDlpFetcher(data_dir=str(tmp_path), ytdlp_path=str(tmp_path / "no-such-yt-dlp"))

        with pytest.raises(FetchError, match="yt-dlp not found"):
            await fetcher.fetch(recording())
