"""Queue job payload schema."""

from __future__ import annotations

from pydantic import BaseModel


class SnapshotJobData(BaseModel):
    """Everything a worker needs to process one (app, repository) job."""

    app_id: str
    app_name: str
    repository_id: str
    github_url: str
    owner: str
    name: str
    base_url: str
    github_token_encrypted: str | None = None
    client_auth_key_encrypted: str
    is_rescan: bool = False

    @property
    def job_id(self) -> str:
        return f"{self.app_id}-{self.repository_id}"

    @property
    def repo_key(self) -> str:
        """Lock key for the physical working tree shared by all subscribers."""
        return f"{self.owner}/{self.name}"

    @property
    def log_prefix(self) -> str:
        return f"[{self.app_name}-{self.app_id}]"
