from fastapi import FastAPI

from cligate.logging_config import setup_logging
from cligate.provider.config import load_snapshot
from cligate.routes import create_app
from cligate.settings import settings


# Configure logging once for the whole process.
setup_logging()


def create_default_app() -> FastAPI:
    """
    Listener for CLIGATE_PROFILE / CLIGATE_CLI_FAMILY, for running the proxy
    under uvicorn directly instead of through `cligate serve`.
    """
    snapshot = load_snapshot(settings.profile, settings.cli_family)
    return create_app(snapshot)


def run() -> None:
    import uvicorn

    # Use our own logging configuration configured in cligate.logging_config.
    uvicorn.run(
        "main:create_default_app",
        factory=True,
        host=settings.host,
        port=settings.port or 8787,
        log_config=None,
    )


if __name__ == "__main__":
    run()
