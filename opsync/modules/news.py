"""Daily news refresh: caches the raw markdown archive for recent days."""

import logging
from datetime import datetime, timedelta, timezone
from typing import List, Optional

import httpx

logger = logging.getLogger(__name__)

NEWS_TABLE = "news_cache"
DEFAULT_NEWS_URL = "https://slothvips.github.io/daily-hot-news/archives"
KEEP_DAYS = 3

# Archive days roll over at midnight UTC+8
_ARCHIVE_TZ = timezone(timedelta(hours=8))


def archive_dates(now: Optional[datetime] = None, days: int = KEEP_DAYS) -> List[str]:
    """Archive dates (YYYY-MM-DD) from today backwards."""
    now = (now or datetime.now(timezone.utc)).astimezone(_ARCHIVE_TZ)
    return [(now - timedelta(days=offset)).strftime("%Y-%m-%d") for offset in range(days)]


class NewsRefreshModule:
    name = "news"

    def __init__(
        self,
        log,
        base_url: Optional[str] = DEFAULT_NEWS_URL,
        timeout: float = 30.0,
        client: Optional[httpx.Client] = None,
    ):
        self.log = log
        self.base_url = base_url.rstrip("/") if base_url else None
        self.timeout = timeout
        self._client = client

    def enabled(self) -> bool:
        return bool(self.base_url)

    def run(self, now: Optional[datetime] = None) -> None:
        dates = archive_dates(now)
        client = self._client or httpx.Client(timeout=self.timeout)
        try:
            today = dates[0]
            if self.log.get_entity(NEWS_TABLE, today) is None:
                response = client.get(f"{self.base_url}/daily_hot_{today}.md", timeout=self.timeout)
                if response.status_code == 404:
                    logger.info(f"No news archive for {today} yet")
                else:
                    response.raise_for_status()
                    self.log.put_entity(NEWS_TABLE, today, {"date": today, "markdown": response.text})
        finally:
            if self._client is None:
                client.close()

        for key, _ in self.log.list_entities(NEWS_TABLE):
            if key not in dates:
                self.log.delete_entity(NEWS_TABLE, key)
