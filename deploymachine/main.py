# main.py

"""
Deploy Machine - Main Entry Point

Runs the web server that listens to GitHub notifications and the periodic
checks ("serve", the default), or runs one periodic check and exits once
all queued tasks are over ("scheduled").
"""

import argparse
import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Optional

from fastapi import FastAPI

from deploymachine.core.config import Settings, settings as default_settings
from deploymachine.core.errors import register_error_handlers
from deploymachine.core.logging_setup import setup_logging
from deploymachine.routers import job_router
from deploymachine.routers.github_router import create_github_router
from deploymachine.services import HookService, TaskQueue, run_git_action
from deploymachine.services.deploy_keys import clean_deploy_keys, provision_deploy_keys
from deploymachine.utils.file_handler import delete_folder, remove_file

logger = logging.getLogger(__name__)


def prepare_data_folder(settings: Settings, serving: bool = True) -> None:
    """Create the data folder and reset what a previous server run left behind.

    The "repositories" folder may contain a lot of files. It is renamed to
    "repositories-bak" here and deleted once the server is up.
    """
    data_folder = settings.tasks_folder.parent
    logger.info(f"Create folder {data_folder}...")
    data_folder.mkdir(parents=True, exist_ok=True)

    if serving:
        clean_deploy_keys(settings.deploykeys_folder)

        logger.info("Remove old lock if there is one...")
        if remove_file(settings.tasks_folder / "lock"):
            logger.info("Remove old lock if there is one... removed")
        else:
            logger.info("Remove old lock if there is one... not needed")

        if settings.repositories_folder.exists():
            logger.info("Move repositories folder...")
            delete_folder(settings.repositories_bak_folder)
            settings.repositories_folder.rename(settings.repositories_bak_folder)
            logger.info("Move repositories folder... done")

    provision_deploy_keys(settings.deploykeys_folder, settings.deploy_keys)


def default_key(settings: Settings) -> Optional[str]:
    if settings.default_deploy_key in settings.deploy_keys:
        return settings.default_deploy_key
    return None


def build_queue(settings: Settings) -> TaskQueue:
    return TaskQueue(run_git_action, settings.tasks_folder, max_items=settings.max_running_jobs)


def build_hook_service(settings: Settings, queue: TaskQueue) -> HookService:
    return HookService(
        queue,
        data_folder=settings.data_folder,
        post_receive_hooks=settings.post_receive_hooks,
        periodic_hooks=settings.periodic_hooks,
        default_key=default_key(settings)
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = app.state.settings
    logger.info("Server starting...")
    prepare_data_folder(settings, serving=True)

    queue = build_queue(settings)
    app.state.queue = queue
    app.state.hook_service = build_hook_service(settings, queue)
    await queue.start()

    monitor = None
    if not settings.periodic_scheduled:
        monitor = asyncio.create_task(app.state.hook_service.monitor(settings.periodic_interval))

    cleanup = asyncio.create_task(asyncio.to_thread(delete_folder, settings.repositories_bak_folder))
    logger.info("Waiting for notifications...")
    try:
        yield
    finally:
        for task in (monitor, cleanup):
            if task is not None:
                task.cancel()
        await asyncio.gather(*(t for t in (monitor, cleanup) if t is not None), return_exceptions=True)
        await queue.close()
        logger.info("Server stopped")


def create_app(settings: Settings = default_settings) -> FastAPI:
    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        debug=settings.debug,
        lifespan=lifespan
    )
    app.state.settings = settings
    register_error_handlers(app)

    app.include_router(create_github_router(settings.hook_path))
    app.include_router(job_router.router)

    @app.get("/")
    async def root():
        """API root endpoint"""
        return {
            "name": settings.app_name,
            "version": settings.app_version,
            "endpoints": {
                "github_hook": settings.hook_path,
                "queue_status": "/api/jobs",
                "job_status": "/api/jobs/{job_id}",
                "health": "/health",
                "docs": "/docs"
            }
        }

    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {
            "status": "healthy",
            "timestamp": datetime.now().isoformat(),
            "version": settings.app_version
        }

    return app


app = create_app()


async def run_scheduled(settings: Settings) -> int:
    """Queue the periodic hooks once and wait for the queue to drain"""
    prepare_data_folder(settings, serving=False)
    queue = build_queue(settings)
    try:
        await queue.start()
        queued = await build_hook_service(settings, queue).run_periodic_check()
        await queue.wait_idle()
    finally:
        await queue.close()
    logger.info(f"Scheduled check over, {len(queued)} tasks queued")
    return len(queued)


def main(argv=None) -> None:
    parser = argparse.ArgumentParser(description="GitHub webhook listener that runs git actions")
    parser.add_argument("mode", nargs="?", choices=["serve", "scheduled"], default="serve",
                        help="serve: run the web server (default); scheduled: run one periodic check")
    args = parser.parse_args(argv)

    setup_logging(default_settings.log_level)

    if args.mode == "scheduled":
        asyncio.run(run_scheduled(default_settings))
        return

    import uvicorn
    uvicorn.run(
        app,
        host=default_settings.host,
        port=default_settings.port,
        log_level=default_settings.log_level.lower()
    )


if __name__ == "__main__":
    main()
