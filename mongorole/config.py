import os


def _int_env(name: str, default: int) -> int:
    raw = str(os.getenv(name, str(default))).strip()
    try:
        return int(raw)
    except Exception:
        return default


def _str_env(name: str, default: str) -> str:
    return str(os.getenv(name, default)).strip()


# Role and endpoint names as declared in the deployment
MONGODB_ROLE_NAME = "MongoDBRole"
MONGOD_PORT_ENDPOINT = "MongodPort"

# Configuration setting names
REPLICA_SET_NAME_SETTING = "ReplicaSetName"
LOG_VERBOSITY_SETTING = "MongodLogVerbosity"
RECYCLE_SETTING = "RecycleOnExit"
EXEMPT_SETTINGS_SETTING = "ExemptConfigurationItems"
MAX_DRIVE_SIZE_SETTING = "MaxDBDriveSizeInMB"
BINARY_FOLDER_SETTING = "MongoDBBinaryFolder"
DATA_CONNECTION_SETTING = "DataConnectionString"

# Local resource names
LOCAL_CACHE_RESOURCE = "MongodLocalCacheDir"
LOG_DIR_RESOURCE = "MongodLogDir"

# Storage naming
DATA_CONTAINER_PREFIX = "mongoddatadrive"
DATA_BLOB_FORMAT = "mongoddblobdrive{0}.vhd"
DATA_SUBDIRECTORY = "data"

MONGOD_BINARY_NAME = "mongod"
MONGOD_LOG_FILE_NAME = "mongod.log"

# Command line templates: port, dbpath, logpath, replica set name, verbosity
MONGOD_COMMAND_LINE_EMULATED = (
    "--port {0} --dbpath {1} --logpath {2} --replSet {3} {4} --logappend --bind_ip 127.0.0.1"
)
MONGOD_COMMAND_LINE_CLOUD = (
    "--port {0} --dbpath {1} --logpath {2} --replSet {3} {4} --logappend --bind_ip_all --quiet"
)

DEFAULT_MAX_DRIVE_SIZE_MB = 1024
DEFAULT_BINARY_FOLDER = "MongoDBBinaries/bin"

# Process-level defaults
ROLE_ROOT = _str_env("MONGOROLE_ROLE_ROOT", os.getcwd())
RUN_POLL_INTERVAL_SECONDS = _int_env("MONGOROLE_POLL_INTERVAL", 15)
LISTEN_POLL_INTERVAL_SECONDS = _int_env("MONGOROLE_LISTEN_POLL_INTERVAL", 1)
STEP_DOWN_SECONDS = _int_env("MONGOROLE_STEP_DOWN_SECONDS", 60)
MGMT_PORT = _int_env("MONGOROLE_MGMT_PORT", 9300)
MGMT_BIND_HOST = _str_env("MONGOROLE_MGMT_BIND_HOST", "0.0.0.0")
FABRIC_URL = _str_env("MONGOROLE_FABRIC_URL", "")
DEPLOYMENT_FILE = _str_env("MONGOROLE_DEPLOYMENT_FILE", "")
