"""
Application configuration management.
"""

from typing import List, Optional

from pydantic import model_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Azure DevOps
    azure_devops_pat: str
    azure_devops_org: str

    # Webhook
    webhook_secret: str

    # Bot identity; also the project that holds the bot's forks
    bot_name: str
    fork_repos: List[str] = []

    # "project/team" whose members may request cherry-picks
    members_team: Optional[str] = None

    # Assignment of the requester to the new pull request
    assign_via_api: bool = False
    assign_via_comment: bool = False

    notify_unauthorized: bool = False

    # Working copy
    git_remote_template: str = "https://dev.azure.com/{org}/{owner}/_git/{name}"
    working_copy_dir: str = "/tmp/cherrypicker"

    # Application
    log_level: str = "INFO"
    api_max_retries: int = 3

    class Config:
        env_file = ".env"
        case_sensitive = False

    @model_validator(mode="after")
    def check_assignment_mode(self) -> "Settings":
        """Reject enabling both assignment paths at once."""
        if self.assign_via_api and self.assign_via_comment:
            raise ValueError(
                "assign_via_api and assign_via_comment are mutually exclusive"
            )
        return self

    @model_validator(mode="after")
    def check_fork_owner(self) -> "Settings":
        """Forks must live in the bot's project; pull request heads name it as owner."""
        for full_name in self.fork_repos:
            owner, _, name = full_name.partition("/")
            if not name:
                raise ValueError(f"fork repository {full_name!r} is not \"owner/name\"")
            if owner != self.bot_name:
                raise ValueError(
                    f"fork repository {full_name!r} is not owned by bot {self.bot_name!r}"
                )
        return self


# Global settings instance
settings = Settings()
