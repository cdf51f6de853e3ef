import os
from typing import Any, Callable, List, Optional, Tuple

from pydantic import BaseModel, ValidationError, create_model

from . import log

logger = log.get_logger(__name__)


class EnvVarSpec(BaseModel):
    id: str
    default: Optional[str] = None
    parse: Optional[Callable[[str], Any]] = None
    # pydantic field definition used by validate(), e.g. (int, ...)
    type: Tuple[Any, Any] = (str, ...)
    is_optional: bool = False
    is_secret: bool = False


def parse(var: EnvVarSpec) -> Any:
    value = os.environ.get(var.id, var.default)
    if value is None or value == "":
        return None
    if var.parse is not None:
        return var.parse(value)
    return value


def validate(vars: List[EnvVarSpec]) -> bool:
    """Parse and type-check every variable, logging each problem. True if all are valid."""
    ok = True
    for var in vars:
        raw = os.environ.get(var.id, var.default)
        if raw is None or raw == "":
            if not var.is_optional:
                logger.error(f"Missing required environment variable {var.id}")
                ok = False
            continue

        shown = "***" if var.is_secret else raw
        try:
            value = parse(var)
            model = create_model(f"Env_{var.id}", value=var.type)
            model(value=value)
        except (ValueError, TypeError, ValidationError) as e:
            logger.error(f"Invalid value for {var.id}={shown}: {e}")
            ok = False
    return ok
