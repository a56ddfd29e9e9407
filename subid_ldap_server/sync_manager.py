import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.responses import HTMLResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST
from uvicorn.config import LOGGING_CONFIG

from . import metrics
from .allocator import ReconcileResult, unique_users
from .config import SubIDConfig
from .directory import DirectoryClient, sort_users
from .subordinate_manager import APP_NAME, SubordinateManager

logging.config.dictConfig(LOGGING_CONFIG)

logger = logging.getLogger("uvicorn.error")

METRICS_PATH = "/metrics"


class SyncManager:
    def __init__(self, config: SubIDConfig, directory: DirectoryClient = None, subordinate: SubordinateManager = None):
        self.config = config
        self.directory = directory or DirectoryClient(config)
        self.subordinate = subordinate or SubordinateManager(
            subuid_path=config.subuid_path,
            subgid_path=config.subgid_path,
            start=config.subid_start,
            id_range=config.subid_range,
        )

    async def run_once(self) -> ReconcileResult:
        """
        Run one full pass: query LDAP, reconcile the subuid file and copy it to subgid.

        A directory failure raises before either file is touched.
        """
        metrics.reset_metrics()
        with metrics.observe_run():
            users = sort_users(await self.directory.users())
            logger.debug(f"LDAP returned users count={len(users)}")
            result = await self.subordinate.sync(users)
            total = len(unique_users(users))
            metrics.record_result(total, result)
        if result.capacity_exhausted:
            logger.error(f"Insufficient subids available, unassigned users: {', '.join(result.unassigned)}")
        logger.info(
            f"Successfully updated subids in {self.subordinate.subuid_path} "
            f"added={result.added} removed={result.removed} total={total}"
        )
        return result

    async def run_forever(self) -> None:
        while True:
            try:
                await self.run_once()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Subid sync failed: {e}")
            await asyncio.sleep(self.config.update_interval)


def create_app(manager: SyncManager) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        task = asyncio.create_task(manager.run_forever())
        yield
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    app = FastAPI(lifespan=lifespan)
    app.state.manager = manager

    @app.get("/", response_class=HTMLResponse)
    async def index():
        return f"""<html>
<head><title>{APP_NAME}</title></head>
<body>
<h1>{APP_NAME}</h1>
<p><a href='{METRICS_PATH}'>Metrics</a></p>
</body>
</html>"""

    @app.get(METRICS_PATH)
    async def get_metrics():
        return Response(content=metrics.render_metrics(), media_type=CONTENT_TYPE_LATEST)

    return app
