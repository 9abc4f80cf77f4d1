"""
FastAPI application entry point.
"""

from fastapi import FastAPI

from cherrypicker import __version__
from cherrypicker.api import webhooks
from cherrypicker.config import settings
from cherrypicker.utils.logging import get_logger, setup_logging

# Configure structured logging
setup_logging(settings.log_level)

logger = get_logger(__name__)

app = FastAPI(
    title="Azure DevOps Cherry-Pick Bot",
    description="Cherry-picks merged pull requests onto release branches on request",
    version=__version__,
)


@app.get("/health")
async def health_check():
    """Health check endpoint for container orchestration."""
    return {"status": "healthy", "version": __version__}


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "message": "Azure DevOps Cherry-Pick Bot API",
        "version": __version__,
        "docs": "/docs",
    }


app.include_router(webhooks.router)


@app.on_event("startup")
async def startup_event():
    """Log the effective bot configuration."""
    logger.info(
        "Starting cherry-pick bot",
        extra={
            "bot_name": settings.bot_name,
            "fork_repos": settings.fork_repos,
            "assign_via_api": settings.assign_via_api,
            "assign_via_comment": settings.assign_via_comment,
        },
    )


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
