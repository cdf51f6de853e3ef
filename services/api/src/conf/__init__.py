from typing import Literal, Optional

from pydantic import BaseModel

from models.settings import AuctionSettings
from utils import env, log
from utils.env import EnvVarSpec

logger = log.get_logger(__name__)

#### Types ####

class HttpServerConf(BaseModel):
    host: str
    port: int
    autoreload: bool

class SchedulerConf(BaseModel):
    sweep_interval_seconds: int

#### Env Vars ####

## Logging ##

LOG_LEVEL = EnvVarSpec(id="LOG_LEVEL", default="INFO")

ENVIRONMENT = EnvVarSpec(id="ENVIRONMENT", default="development")

## HTTP ##

HTTP_HOST = EnvVarSpec(id="HTTP_HOST", default="0.0.0.0")

HTTP_PORT = EnvVarSpec(id="HTTP_PORT", default="8000", parse=int, type=(int, ...))

HTTP_AUTORELOAD = EnvVarSpec(
    id="HTTP_AUTORELOAD",
    parse=lambda x: x.lower() == "true",
    default="false",
    type=(bool, ...),
)

HTTP_EXPOSE_ERRORS = EnvVarSpec(
    id="HTTP_EXPOSE_ERRORS",
    default="false",
    parse=lambda x: x.lower() == "true",
    type=(bool, ...),
)

## Storage ##

STORE_BACKEND = EnvVarSpec(
    id="STORE_BACKEND",
    default="couchbase",
    parse=lambda x: x.lower(),
    type=(Literal["couchbase", "memory"], ...),
)

## Auctions ##

BID_INCREMENT = EnvVarSpec(id="BID_INCREMENT", default="5", parse=float, type=(float, ...))

BID_TIMEOUT_SECONDS = EnvVarSpec(
    id="BID_TIMEOUT_SECONDS", default="10", parse=float, type=(float, ...)
)

BID_MAX_CONFLICT_RETRIES = EnvVarSpec(
    id="BID_MAX_CONFLICT_RETRIES", default="3", parse=int, type=(int, ...)
)

SWEEP_INTERVAL_SECONDS = EnvVarSpec(
    id="SWEEP_INTERVAL_SECONDS", default="60", parse=int, type=(int, ...)
)

SWEEP_CONCURRENCY = EnvVarSpec(id="SWEEP_CONCURRENCY", default="8", parse=int, type=(int, ...))

RELIST_DURATION_DAYS = EnvVarSpec(
    id="RELIST_DURATION_DAYS", default="7", parse=int, type=(int, ...)
)

BID_ATTEMPT_RETENTION_DAYS = EnvVarSpec(
    id="BID_ATTEMPT_RETENTION_DAYS", default="30", parse=int, type=(int, ...)
)

PENDING_WRITE_LEASE_SECONDS = EnvVarSpec(
    id="PENDING_WRITE_LEASE_SECONDS", default="30", parse=float, type=(float, ...)
)

## Internal API ##

INTERNAL_API_KEY = EnvVarSpec(id="INTERNAL_API_KEY", is_optional=True, is_secret=True)

## Couchbase ##
## NOTE: COUCHBASE_* variables are read and validated by clients.couchbase.config
## on first connection, and only when STORE_BACKEND=couchbase.

#### Validation ####
VALIDATED_ENV_VARS = [
    HTTP_AUTORELOAD,
    HTTP_EXPOSE_ERRORS,
    HTTP_PORT,
    LOG_LEVEL,
    ENVIRONMENT,
    STORE_BACKEND,
    BID_INCREMENT,
    BID_TIMEOUT_SECONDS,
    BID_MAX_CONFLICT_RETRIES,
    SWEEP_INTERVAL_SECONDS,
    SWEEP_CONCURRENCY,
    RELIST_DURATION_DAYS,
    BID_ATTEMPT_RETENTION_DAYS,
    PENDING_WRITE_LEASE_SECONDS,
    INTERNAL_API_KEY,
]

def validate() -> bool:
    return env.validate(VALIDATED_ENV_VARS)

#### Getters ####

def get_http_expose_errors() -> bool:
    return env.parse(HTTP_EXPOSE_ERRORS)

def get_log_level() -> str:
    return env.parse(LOG_LEVEL)

def get_http_conf() -> HttpServerConf:
    return HttpServerConf(
        host=env.parse(HTTP_HOST),
        port=env.parse(HTTP_PORT),
        autoreload=env.parse(HTTP_AUTORELOAD),
    )

def get_store_backend() -> str:
    return env.parse(STORE_BACKEND)

def get_internal_api_key() -> Optional[str]:
    return env.parse(INTERNAL_API_KEY)

def get_scheduler_conf() -> SchedulerConf:
    return SchedulerConf(sweep_interval_seconds=env.parse(SWEEP_INTERVAL_SECONDS))

def get_auction_settings() -> AuctionSettings:
    """Auction engine parameters; pydantic rejects out-of-range values."""
    return AuctionSettings(
        bid_increment=env.parse(BID_INCREMENT),
        bid_timeout_seconds=env.parse(BID_TIMEOUT_SECONDS),
        max_conflict_retries=env.parse(BID_MAX_CONFLICT_RETRIES),
        sweep_concurrency=env.parse(SWEEP_CONCURRENCY),
        relist_duration_days=env.parse(RELIST_DURATION_DAYS),
        bid_attempt_retention_days=env.parse(BID_ATTEMPT_RETENTION_DAYS),
        pending_write_lease_seconds=env.parse(PENDING_WRITE_LEASE_SECONDS),
    )
