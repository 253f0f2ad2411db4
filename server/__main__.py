"""Run the knowledge API with uvicorn: ``python -m server``."""

import uvicorn

from config.settings import get_settings


def main():
    settings = get_settings()
    uvicorn.run(
        "server.knowledge_api:app",
        host="0.0.0.0",
        port=settings.server.port,
        log_level=settings.server.log_level.lower(),
    )


if __name__ == "__main__":
    main()
