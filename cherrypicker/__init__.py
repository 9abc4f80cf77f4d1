"""Cherry-pick bot for Azure DevOps pull requests."""

__version__ = "0.1.0"
