"""Run the web UI with uvicorn: ``binwalk-web`` or ``python -m binwalk_web.server``."""
import uvicorn

from .settings import settings


def main() -> None:
    uvicorn.run(
        "binwalk_web.api:app",
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
