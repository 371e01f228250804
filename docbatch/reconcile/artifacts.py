import time
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from urllib.parse import urlparse

import httpx

from docbatch.config.settings import Settings
from docbatch.domain.exceptions import ArtifactDownloadError
from docbatch.logging.logger import Log


@dataclass(frozen=True)
class StoredArtifact:
    source_url: str
    path: Path
    size_bytes: int


def _safe_name(name: str) -> str:
    cleaned = PurePosixPath(name.replace("\\", "/")).name.strip()
    return cleaned or "result"


def default_artifact_name(source_url: str, fallback: str) -> str:
    """Last path segment of the URL, or ``fallback`` when the URL has none."""
    segment = PurePosixPath(urlparse(source_url).path).name
    return _safe_name(segment or fallback)


class ArtifactFetcher:
    """Downloads result artifacts produced by the worker into the results directory."""

    def __init__(self, settings: Settings, client: httpx.Client | None = None) -> None:
        self._settings = settings
        self._client = client or httpx.Client(
            timeout=settings.artifact_timeout_seconds, follow_redirects=False
        )

    def check_url(self, url: str) -> None:
        """Reject URLs outside the allowed scheme and hosts.

        Raises:
            ArtifactDownloadError: if the URL may not be fetched.
        """
        parsed = urlparse(url)
        allowed_schemes = {"https"} if self._settings.artifact_require_https else {"https", "http"}
        if parsed.scheme not in allowed_schemes:
            raise ArtifactDownloadError(f"Refusing to download from '{url}': HTTPS required")
        host = (parsed.hostname or "").lower()
        if not host:
            raise ArtifactDownloadError(f"Refusing to download from '{url}': no host")
        allowed = [h.lower() for h in self._settings.artifact_allowed_hosts]
        if allowed and not any(host == h or host.endswith("." + h) for h in allowed):
            raise ArtifactDownloadError(
                f"Refusing to download from '{host}': host is not in the allowed list"
            )

    def fetch(
        self,
        url: str,
        *,
        batch_context: str,
        processing_id: str,
        filename: str,
    ) -> StoredArtifact:
        """Download ``url`` and store it under results_root/<context>/<processing>/.

        Network errors and 5xx responses are retried with a linear backoff.

        Raises:
            ArtifactDownloadError: when the URL is refused, the server answers
                4xx, the body is empty, or every attempt fails.
        """
        self.check_url(url)
        content = self._download(url)

        target_dir = self._settings.results_root / batch_context / processing_id
        target = target_dir / _safe_name(filename)
        try:
            target_dir.mkdir(parents=True, exist_ok=True)
            target.write_bytes(content)
        except OSError as exc:
            raise ArtifactDownloadError(f"Could not store artifact at {target}: {exc}") from exc

        Log.info(f"Stored artifact for processing {processing_id} at {target} ({len(content)} bytes)")
        return StoredArtifact(source_url=url, path=target, size_bytes=len(content))

    def _download(self, url: str) -> bytes:
        max_attempts = max(1, self._settings.artifact_max_attempts)
        last_error = "no attempt made"
        for attempt in range(1, max_attempts + 1):
            try:
                response = self._client.get(url)
            except httpx.HTTPError as exc:
                last_error = f"request failed: {exc}"
            else:
                if response.status_code >= 500:
                    last_error = f"server responded {response.status_code}"
                elif response.status_code >= 400:
                    raise ArtifactDownloadError(
                        f"Artifact download refused: {response.status_code} {response.reason_phrase}"
                    )
                elif not response.content:
                    raise ArtifactDownloadError("Artifact download returned an empty file")
                else:
                    return response.content

            if attempt < max_attempts:
                Log.warning(
                    f"Artifact download attempt {attempt}/{max_attempts} failed ({last_error}), "
                    f"retrying in {attempt}s"
                )
                time.sleep(attempt)

        raise ArtifactDownloadError(
            f"Artifact download failed after {max_attempts} attempts: {last_error}"
        )

    def close(self) -> None:
        self._client.close()
