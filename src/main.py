import asyncio
from pathlib import Path

from dotenv import find_dotenv, load_dotenv
from loguru import logger

from src.logging_setup import setup_logging


def _load_env() -> None:
    env_path = find_dotenv(usecwd=True)
    if not env_path:
        candidate = Path(__file__).resolve().parents[1] / ".env"
        if candidate.exists():
            env_path = str(candidate)
    if env_path:
        logger.info("Loaded .env from {}", env_path)
        load_dotenv(env_path, override=True)
    else:
        logger.warning("No .env found")


def _run_migrations() -> None:
    from alembic import command
    from alembic.config import Config

    config_path = Path(__file__).resolve().parents[1] / "alembic.ini"
    alembic_cfg = Config(str(config_path))
    command.upgrade(alembic_cfg, "head")


def main() -> None:
    _load_env()
    setup_logging()

    from src.config import settings
    from src.scheduler.roller import run_roller_loop

    if settings.run_migrations_on_startup:
        _run_migrations()
    if not settings.recurrence_enabled:
        logger.warning("recurrence roller disabled (RECURRENCE_ENABLED=0)")
        return

    try:
        asyncio.run(run_roller_loop())
    except KeyboardInterrupt:
        return


if __name__ == "__main__":
    main()
