import requests

from .errors import FatalError, TransientError
from .utils import read_secret_optional


class ReconcilerClient:
    """Reads the tag an Argo CD style application has actually applied."""

    def __init__(self, base_url: str, app_name: str, repository: str, token_file: str = "", timeout: int = 15):
        self.base_url = base_url.rstrip("/")
        self.app_name = app_name
        self.repository = repository
        self.token_file = token_file
        self.timeout = timeout

    def _headers(self) -> dict:
        token = read_secret_optional(self.token_file)
        return {"Authorization": f"Bearer {token}"} if token else {}

    def application(self) -> dict:
        url = f"{self.base_url}/api/v1/applications/{self.app_name}"
        try:
            r = requests.get(url, headers=self._headers(), timeout=self.timeout)
        except (requests.ConnectionError, requests.Timeout) as e:
            raise TransientError(f"reconciler_unreachable url={url}: {e}") from e
        if r.status_code in (401, 403):
            raise FatalError(f"reconciler_auth_failed url={url} -> {r.status_code}")
        if r.status_code >= 500:
            raise TransientError(f"reconciler_unavailable url={url} -> {r.status_code}")
        if r.status_code >= 400:
            raise FatalError(f"reconciler_error url={url} -> {r.status_code}")
        return r.json()

    def applied_tag(self):
        """Tag of ``repository`` among the live images, or None."""
        status = self.application().get("status") or {}
        sync = status.get("sync") or {}
        health = status.get("health") or {}
        if sync.get("status") not in (None, "Synced") or health.get("status") not in (None, "Healthy"):
            return None
        for image in (status.get("summary") or {}).get("images") or []:
            name, _, tag = image.rpartition(":")
            if name == self.repository and "/" not in tag:
                return tag
        return None
