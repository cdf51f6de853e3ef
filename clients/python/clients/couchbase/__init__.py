from .config import (
    USERNAME,
    DEFAULT_BUCKET_NAME,
    HOST,
    PROTOCOL,
    validate,
    get_cluster,
    get_default_bucket,
    check_connection
)
from .keyspace import (
    Keyspace,
    get_keyspace,
)
from .base_model import (
    BaseModelCouchbase,
    BaseCouchbaseEntityData,
    DataT,
    T
)
