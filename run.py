"""Run the AI provider router with uvicorn."""

import logging

import uvicorn

from provider_router.config import settings


def main():
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    uvicorn.run("provider_router.main:app", host=settings.app_host, port=settings.app_port)


if __name__ == "__main__":
    main()
