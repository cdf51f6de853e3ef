from contextlib import asynccontextmanager
from pathlib import Path

import conf
import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from routes.base import router
from scheduler import init_scheduler, shutdown_scheduler
from utils import log

from clients.couchbase import check_connection
from models.settings import set_auction_settings
from models.stores import InMemoryAuctionStore, set_store
from models.stores.couchbase import CouchbaseAuctionStore

log.init(conf.get_log_level())
logger = log.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = conf.get_auction_settings()
    set_auction_settings(settings)
    logger.info(
        f"Auction settings: increment {settings.bid_increment}, timeout {settings.bid_timeout_seconds}s, "
        f"{settings.max_conflict_retries} conflict retries"
    )

    backend = conf.get_store_backend()
    if backend == "memory":
        logger.warning("Using in-memory auction store, data will not survive a restart")
        set_store(InMemoryAuctionStore())
    else:
        # Check database connection
        logger.info("Verifying Couchbase connection...")
        await check_connection()
        logger.info("Couchbase connection verified.")
        set_store(CouchbaseAuctionStore())

    init_scheduler(conf.get_scheduler_conf().sweep_interval_seconds)

    yield

    shutdown_scheduler()
    set_store(None)


app = FastAPI(
    title="Auction API",
    version="0.1.0",
    docs_url="/docs",
    lifespan=lifespan,
    debug=conf.get_http_expose_errors(),
)

app.include_router(router)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

if not conf.validate():
    raise ValueError("Invalid configuration.")

http_conf = conf.get_http_conf()
logger.info(f"Starting API on port {http_conf.port}")

logger.info("--- Registered Routes ---")
for route in app.routes:
    methods_set = getattr(route, "methods", None)
    methods = ", ".join(methods_set) if methods_set else "Any"
    path = getattr(route, "path", "<unknown>")
    logger.info(f"{path} [{methods}]")
logger.info("-------------------------")

if __name__ == "__main__":
    uvicorn.run(
        "main:app",
        host=http_conf.host,
        port=http_conf.port,
        reload=http_conf.autoreload,
        log_level="info",
        reload_dirs=[str(Path(__file__).parent), "/models", "/clients"],
        log_config=None,
    )
