"""Application entry point for the exam practice server."""

from __future__ import annotations

import asyncio
import sys

from exam_practice.config import Settings, get_settings
from exam_practice.core.quiz_manager import QuizManager
from exam_practice.core.scheduling import AsyncioScheduler
from exam_practice.core.services.durable_store import DurableStore
from exam_practice.core.services.exam_repository import ExamRepository
from exam_practice.core.services.storage_backends import JsonFileStorageBackend, StorageReadError
from exam_practice.core.sync_client import HttpActionSender, acknowledge_locally
from exam_practice.server.api_server import serve_api
from exam_practice.utils.logging_config import configure_logging


def build_quiz_manager(settings: Settings) -> QuizManager:
    """Wire the storage, scheduler and services described by ``settings``."""
    scheduler = AsyncioScheduler()
    backend = JsonFileStorageBackend(settings.data_file, quota_bytes=settings.storage_quota_bytes)
    store = DurableStore(
        backend,
        max_storage_bytes=settings.storage_quota_bytes,
        clock=scheduler.now,
    )
    repository = ExamRepository(settings.exams_dir, settings.exam_time_limit_minutes)
    process_action = HttpActionSender(settings.sync_url) if settings.sync_url else acknowledge_locally
    return QuizManager(
        store,
        scheduler,
        repository,
        process_action,
        online=settings.start_online,
    )


def main() -> None:
    """Initialize logging and serve the API until interrupted."""
    settings = get_settings()
    logger = configure_logging(settings.log_level.upper())

    try:
        quiz_manager = build_quiz_manager(settings)
    except StorageReadError as exc:
        logger.error("%s Move the file aside or restore it from a backup.", exc)
        sys.exit(1)

    logger.info("Starting exam practice server on http://%s:%d/", settings.host, settings.port)
    logger.info("Exams directory: %s, data file: %s", settings.exams_dir, settings.data_file)
    try:
        asyncio.run(
            serve_api(quiz_manager, host=settings.host, port=settings.port, log_level=settings.log_level)
        )
    except KeyboardInterrupt:
        logger.info("Shutting down")


if __name__ == "__main__":
    main()
