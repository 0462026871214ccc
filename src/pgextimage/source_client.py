#! /bin/env python3
from __future__ import annotations

import logging
from pathlib import Path

import requests
from requests.adapters import HTTPAdapter, Retry

from pgextimage import internal_config
from pgextimage.install_engine import stream_download_to_target

logger: logging.Logger = logging.getLogger(__name__)


class SourceArchiveClient(object):
    """Fetch and probe upstream extension source archives over HTTPS."""

    session: requests.Session

    def __init__(self, retries: int = 0) -> None:
        retry_strategy = Retry(
            total=retries,
            backoff_factor=internal_config.HTTP_RETRY_BACKOFF_FACTOR,
            status_forcelist=internal_config.HTTP_RETRY_STATUS_FORCELIST,
            allowed_methods=internal_config.HTTP_RETRY_ALLOWED_METHODS,
            raise_on_status=False,
        )
        adapter = HTTPAdapter(max_retries=retry_strategy)
        self.session = requests.Session()
        self.session.headers.update({"User-Agent": internal_config.DEFAULT_USER_AGENT})
        self.session.mount("https://", adapter)
        self.session.mount("http://", adapter)

    def is_available(self, url: str) -> bool:
        """Return True when *url* resolves to a downloadable archive."""
        logger.debug(f"Probing {url}")
        response = self.session.head(
            url,
            allow_redirects=True,
            timeout=internal_config.HTTP_REQUEST_TIMEOUT_SECONDS,
        )
        if response.status_code == 405:
            # some mirrors refuse HEAD; read only the headers of a GET instead
            response = self.session.get(
                url,
                stream=True,
                allow_redirects=True,
                timeout=internal_config.HTTP_REQUEST_TIMEOUT_SECONDS,
            )
            response.close()
        if response.status_code == 404:
            return False
        response.raise_for_status()
        return True

    def download(self, url: str, target_path: Path) -> Path:
        logger.info(f"Downloading {url}")
        return stream_download_to_target(
            session=self.session,
            url=url,
            target_path=target_path,
            headers={"User-Agent": internal_config.DEFAULT_USER_AGENT},
            temp_prefix="pgextimage-source.",
            timeout=(
                internal_config.HTTP_STREAM_CONNECT_TIMEOUT_SECONDS,
                internal_config.HTTP_STREAM_READ_TIMEOUT_SECONDS,
            ),
        )
