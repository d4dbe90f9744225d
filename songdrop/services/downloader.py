from __future__ import annotations

import logging
import os

from fastapi.concurrency import run_in_threadpool
from yt_dlp import YoutubeDL
from yt_dlp.utils import DownloadError, ExtractorError

from songdrop.utils.constants import AUDIO_FORMAT, DOWNLOADS_DIR

logger = logging.getLogger(__name__)

WATCH_URL = "https://www.youtube.com/watch?v={item_id}"


class DownloaderError(Exception):
    """The download tool could not produce an artifact."""


def owner_dir(owner_namespace: str, root: str = DOWNLOADS_DIR) -> str:
    if owner_namespace in (".", "..") or "/" in owner_namespace or "\\" in owner_namespace:
        raise DownloaderError(f"Invalid owner namespace: {owner_namespace!r}")
    return os.path.join(root, owner_namespace)


class YtDlpDownloader:
    """
    Pulls the audio track of one video into DOWNLOADS_DIR/<owner>/ as mp3.

    A failed first attempt is retried once with a fresh YoutubeDL instance
    before the failure is reported.
    """

    def __init__(self, root: str = DOWNLOADS_DIR, ydl_factory=YoutubeDL, attempts: int = 2):
        self.root = root
        self.ydl_factory = ydl_factory
        self.attempts = max(1, attempts)

    def _options(self, target_dir: str) -> dict:
        return {
            "quiet": True,
            "no_warnings": True,
            "noplaylist": True,
            "restrictfilenames": True,
            "outtmpl": os.path.join(target_dir, "%(title).200s.%(ext)s"),
            "format": "bestaudio/best",
            "retries": 3,
            "fragment_retries": 3,
            "overwrites": True,
            "postprocessors": [
                {
                    "key": "FFmpegExtractAudio",
                    "preferredcodec": AUDIO_FORMAT,
                    "preferredquality": "0",
                }
            ],
        }

    def _download_once(self, item_id: str, target_dir: str) -> str:
        with self.ydl_factory(self._options(target_dir)) as ydl:
            info = ydl.extract_info(WATCH_URL.format(item_id=item_id), download=True)
            if not info:
                raise DownloaderError(f"No media info returned for {item_id}")

            requested = info.get("requested_downloads") or []
            if requested and requested[0].get("filepath"):
                path = requested[0]["filepath"]
            else:
                # audio extraction swaps the container extension
                base, _ = os.path.splitext(ydl.prepare_filename(info))
                path = f"{base}.{AUDIO_FORMAT}"

        return os.path.basename(path)

    def _download(self, item_id: str, owner_namespace: str) -> str:
        target_dir = owner_dir(owner_namespace, self.root)
        os.makedirs(target_dir, exist_ok=True)

        last_error: Exception | None = None
        for attempt in range(1, self.attempts + 1):
            try:
                filename = self._download_once(item_id, target_dir)
                logger.info("Downloaded %s -> %s", item_id, filename)
                return filename
            except (DownloadError, ExtractorError, DownloaderError) as e:
                last_error = e
                logger.warning("yt-dlp attempt %s/%s failed for %s: %s", attempt, self.attempts, item_id, e)

        raise DownloaderError(f"Download failed for {item_id}: {last_error}")

    async def download(self, item_id: str, owner_namespace: str) -> str:
        if not item_id:
            raise DownloaderError("item_id is required")
        if not owner_namespace:
            raise DownloaderError("owner_namespace is required")
        return await run_in_threadpool(self._download, item_id, owner_namespace)
