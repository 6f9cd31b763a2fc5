"""Serve the match API with uvicorn."""

from __future__ import annotations

import uvicorn

from rankmatch.backend.config import load_settings


def main() -> None:
    settings = load_settings()
    uvicorn.run("rankmatch.backend.api:app", host=settings.host, port=settings.port)


if __name__ == "__main__":
    main()
