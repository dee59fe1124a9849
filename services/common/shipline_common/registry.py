import re, subprocess
from urllib.parse import urlparse

import requests

from .errors import CommandFailed, FatalError, TransientError
from .utils import run_cmd, read_secret_optional

MANIFEST_TYPES = ", ".join([
    "application/vnd.oci.image.index.v1+json",
    "application/vnd.oci.image.manifest.v1+json",
    "application/vnd.docker.distribution.manifest.list.v2+json",
    "application/vnd.docker.distribution.manifest.v2+json",
])

_AUTH_MARKERS = ("unauthorized", "denied", "authentication required", "no basic auth credentials")
_DIGEST_RE = re.compile(r"digest:\s*(sha256:[0-9a-f]{64})")


class RegistryClient:
    """Registry HTTP API v2 for lookups, docker CLI for build and push."""

    def __init__(self, base_url: str, username: str = "", password_file: str = "", timeout: int = 15,
                 push_timeout: int = 1800):
        self.base_url = base_url.rstrip("/")
        self.username = username
        self.password_file = password_file
        self.timeout = timeout
        self.push_timeout = push_timeout

    @property
    def host(self) -> str:
        return urlparse(self.base_url).netloc

    def image_name(self, repository: str) -> str:
        return f"{self.host}/{repository}"

    def _get(self, url: str, headers: dict = None):
        auth = None
        if self.username:
            auth = (self.username, read_secret_optional(self.password_file))
        try:
            r = requests.get(url, headers=headers or {}, auth=auth, timeout=self.timeout)
        except (requests.ConnectionError, requests.Timeout) as e:
            raise TransientError(f"registry_unreachable url={url}: {e}") from e
        if r.status_code in (401, 403):
            raise FatalError(f"registry_auth_failed url={url} -> {r.status_code}")
        if r.status_code >= 500:
            raise TransientError(f"registry_unavailable url={url} -> {r.status_code}")
        return r

    def manifest(self, repository: str, tag: str):
        """Return ``{"digest", "manifest"}`` for a pushed tag, None if absent."""
        url = f"{self.base_url}/v2/{repository}/manifests/{tag}"
        r = self._get(url, {"Accept": MANIFEST_TYPES})
        if r.status_code == 404:
            return None
        if r.status_code >= 400:
            raise FatalError(f"registry_error url={url} -> {r.status_code}")
        return {"digest": r.headers.get("Docker-Content-Digest", ""), "manifest": r.json()}

    def labels(self, repository: str, manifest: dict) -> dict:
        config = (manifest or {}).get("config") or {}
        digest = config.get("digest")
        if not digest:
            # multi-arch index; labels live on the per-platform manifests
            return {}
        url = f"{self.base_url}/v2/{repository}/blobs/{digest}"
        r = self._get(url)
        if r.status_code >= 400:
            raise FatalError(f"registry_error url={url} -> {r.status_code}")
        return ((r.json() or {}).get("config") or {}).get("Labels") or {}

    def build(self, context_dir: str, image: str, labels: dict = None, timeout: int = 1800):
        args = ["docker", "build", "-t", image]
        for k, v in sorted((labels or {}).items()):
            args += ["--label", f"{k}={v}"]
        try:
            run_cmd(args + [context_dir], timeout=timeout)
        except CommandFailed as e:
            raise FatalError(f"image_build_failed image={image}: {e.output[-1200:]}") from e
        except subprocess.TimeoutExpired as e:
            raise TransientError(f"image_build_timeout image={image}") from e

    def push(self, image: str) -> str:
        """Push ``image`` (name:tag) and return the manifest digest."""
        try:
            out = run_cmd(["docker", "push", image], timeout=self.push_timeout)
        except CommandFailed as e:
            low = e.output.lower()
            if any(m in low for m in _AUTH_MARKERS):
                raise FatalError(f"registry_auth_failed image={image}") from e
            raise TransientError(f"registry_push_failed image={image}: {e.output[-600:]}") from e
        except subprocess.TimeoutExpired as e:
            raise TransientError(f"registry_push_timeout image={image}") from e
        m = _DIGEST_RE.search(out)
        if not m:
            raise TransientError(f"registry_push_no_digest image={image}")
        return m.group(1)
