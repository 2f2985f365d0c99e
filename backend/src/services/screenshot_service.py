"""
Screenshot capture through an external rendering service.

Pages are rendered by a thum.io-compatible HTTP API. The returned image is
written to local storage with an atomic rename, so a bookmark only ever
references a fully written file.
"""
import asyncio
import logging
import os
import re
import tempfile
import uuid
from pathlib import Path

import httpx

from core.config import Settings
from services.exceptions import CaptureError, SSRFBlockedError, TransientNetworkError
from services.link_checker import validate_url_not_private

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30.0
DEFAULT_MAX_BYTES = 10 * 1024 * 1024

IMAGE_EXTENSIONS = {
    'image/png': '.png',
    'image/jpeg': '.jpg',
    'image/webp': '.webp',
    'image/gif': '.gif',
}

_AUTH_TOKEN_PATTERN = re.compile(r'(/auth/)([^/]+)(/)')


def redact_token(url: str) -> str:
    """Hide the rendering service token in a candidate URL before logging it."""
    return _AUTH_TOKEN_PATTERN.sub(r'\1*****\3', url)


class ScreenshotService:
    """Captures webpage previews and publishes them as local image assets."""

    def __init__(
        self,
        storage_dir: Path,
        public_path: str = '/screenshots',
        service_url: str = 'https://image.thum.io/get',
        token: str = '',
        width: int = 800,
        viewport_width: int = 1024,
        viewport_height: int = 640,
        timeout: float = DEFAULT_TIMEOUT,
        max_bytes: int = DEFAULT_MAX_BYTES,
    ) -> None:
        self.storage_dir = Path(storage_dir)
        self.public_path = public_path.rstrip('/')
        self.service_url = service_url.rstrip('/')
        self.token = token.strip()
        self.width = width
        self.viewport_width = viewport_width
        self.viewport_height = viewport_height
        self.timeout = timeout
        self.max_bytes = max_bytes

    @classmethod
    def from_settings(cls, settings: Settings) -> "ScreenshotService":
        """Build a screenshot service from application settings."""
        return cls(
            storage_dir=settings.screenshot_storage_dir,
            public_path=settings.screenshot_public_path,
            service_url=settings.screenshot_service_url,
            token=settings.screenshot_service_token,
            width=settings.screenshot_width,
            viewport_width=settings.screenshot_viewport_width,
            viewport_height=settings.screenshot_viewport_height,
            timeout=settings.screenshot_timeout,
            max_bytes=settings.screenshot_max_bytes,
        )

    def candidate_urls(self, url: str) -> list[str]:
        """
        Build rendering requests in order of preference.

        The full option set waits for dynamic pages and fixes the viewport; the
        minimal set is accepted by more plans. Authenticated requests come first
        when a token is configured, unauthenticated ones are the fallback.
        """
        full_options = '/'.join([
            'wait/10',
            f'width/{self.width}',
            f'viewportWidth/{self.viewport_width}',
            f'viewportHeight/{self.viewport_height}',
            'noanimate',
            'noscroll',
        ])
        minimal_options = '/'.join([f'width/{self.width}', 'noanimate', 'noscroll'])

        candidates = []
        if self.token:
            candidates.append(f'{self.service_url}/auth/{self.token}/png/{full_options}/{url}')
            candidates.append(f'{self.service_url}/auth/{self.token}/png/{minimal_options}/{url}')
        candidates.append(f'{self.service_url}/png/{full_options}/{url}')
        candidates.append(f'{self.service_url}/png/{minimal_options}/{url}')
        return candidates

    async def capture(self, url: str) -> str:
        """
        Render a webpage and publish the image.

        Args:
            url: The page to capture.

        Returns:
            Public reference of the stored image, e.g. "/screenshots/<id>.png".

        Raises:
            CaptureError: If the URL is rejected, every rendering attempt fails,
                the capture exceeds its timeout, or the image can't be stored.
        """
        try:
            await validate_url_not_private(url)
        except (SSRFBlockedError, TransientNetworkError, ValueError) as e:
            raise CaptureError(f"Refusing to capture {url}: {e}") from e

        try:
            async with asyncio.timeout(self.timeout):
                image, content_type = await self._render(url)
        except TimeoutError as e:
            raise CaptureError(f"Screenshot capture timed out after {self.timeout}s") from e

        return await asyncio.to_thread(self._publish, image, content_type)

    async def discard(self, asset_ref: str) -> bool:
        """
        Remove a published asset that no bookmark will reference.

        Returns:
            True if a file was removed.
        """
        path = self.asset_path(asset_ref)
        if path is None:
            return False
        try:
            await asyncio.to_thread(path.unlink)
        except FileNotFoundError:
            return False
        logger.info("Discarded screenshot asset %s", asset_ref)
        return True

    def asset_path(self, asset_ref: str) -> Path | None:
        """Map a public reference back to its file, or None if it isn't one of ours."""
        prefix = f'{self.public_path}/'
        if not asset_ref.startswith(prefix):
            return None
        name = asset_ref[len(prefix):]
        if not name or '/' in name or name.startswith('.'):
            return None
        return self.storage_dir / name

    async def _render(self, url: str) -> tuple[bytes, str]:
        """Try each candidate rendering request until one yields an image."""
        async with httpx.AsyncClient(timeout=self.timeout, follow_redirects=True) as client:
            for candidate in self.candidate_urls(url):
                image = await self._fetch_image(client, candidate)
                if image is not None:
                    return image
        raise CaptureError("Screenshot service unavailable")

    async def _fetch_image(
        self, client: httpx.AsyncClient, candidate_url: str,
    ) -> tuple[bytes, str] | None:
        """
        Fetch one candidate; None if it didn't produce a usable image.

        The body is streamed and abandoned as soon as it exceeds max_bytes.
        """
        safe_url = redact_token(candidate_url)
        try:
            async with client.stream('GET', candidate_url) as response:
                if not response.is_success:
                    logger.warning(
                        "Screenshot request failed: HTTP %d for %s", response.status_code, safe_url,
                    )
                    return None

                content_type = (
                    response.headers.get('content-type', '').split(';', 1)[0].strip().lower()
                )
                if not content_type.startswith('image/'):
                    logger.warning(
                        "Screenshot request returned %s instead of an image for %s",
                        content_type or 'no content type',
                        safe_url,
                    )
                    return None

                declared = response.headers.get('content-length', '')
                if declared.isdigit() and int(declared) > self.max_bytes:
                    logger.warning(
                        "Screenshot request declared %s bytes (limit %d) for %s",
                        declared,
                        self.max_bytes,
                        safe_url,
                    )
                    return None

                image = bytearray()
                async for chunk in response.aiter_bytes():
                    image.extend(chunk)
                    if len(image) > self.max_bytes:
                        logger.warning(
                            "Screenshot request exceeded %d bytes for %s", self.max_bytes, safe_url,
                        )
                        return None
        except httpx.HTTPError as e:
            logger.warning("Screenshot request failed for %s: %s", safe_url, e)
            return None

        if not image:
            logger.warning("Screenshot request returned an empty image for %s", safe_url)
            return None
        return bytes(image), content_type

    def _publish(self, image: bytes, content_type: str) -> str:
        """Write the image to a temp file, then rename it into place."""
        self.storage_dir.mkdir(parents=True, exist_ok=True)
        name = f'{uuid.uuid4().hex}{IMAGE_EXTENSIONS.get(content_type, ".img")}'

        fd, tmp_name = tempfile.mkstemp(dir=self.storage_dir, prefix='.capture-', suffix='.tmp')
        try:
            with os.fdopen(fd, 'wb') as tmp_file:
                tmp_file.write(image)
                tmp_file.flush()
                os.fsync(tmp_file.fileno())
            os.replace(tmp_name, self.storage_dir / name)
        except OSError as e:
            Path(tmp_name).unlink(missing_ok=True)
            raise CaptureError(f"Could not store screenshot: {e}") from e

        return f'{self.public_path}/{name}'
