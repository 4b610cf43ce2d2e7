"""Default configuration values for hostdeploy."""

DEFAULT_CONFIG_FILENAMES = ("hostdeploy.yml", "hostdeploy.yaml")

# Remote command timeouts
DEFAULT_TIMEOUTS: dict[str, float] = {
    "command": 300.0,  # seconds, any single remote command
    "connect": 10.0,  # seconds, SSH connection setup
}

# Health verification defaults: 5 attempts, 10s apart
DEFAULT_HEALTH_CONFIG: dict[str, int | float | str] = {
    "max_attempts": 5,
    "timeout": 10.0,  # seconds per attempt
    "strategy": "fixed",
    "delay": 10.0,  # seconds between attempts
}

DEFAULT_HEALTH_STATUS_FIELD = "status"
DEFAULT_HEALTH_STATUS_VALUE = "ok"

# Snapshot retention
DEFAULT_RETENTION_KEEP = 5

# Manifest written next to each snapshot's data directory
SNAPSHOT_MANIFEST = "snapshot.json"
SNAPSHOT_DATA_DIR = "data"
SNAPSHOT_TMP_PREFIX = ".tmp-"

# Snapshots are listed in pages so long histories are never held in memory
SNAPSHOT_PAGE_SIZE = 20

# Migration scripts: numeric prefix establishes total order
DEFAULT_MIGRATION_PATTERN = r"^(\d+)_.+\.sql$"

# Run history ledger
DEFAULT_HISTORY_PATH = ".hostdeploy/history.json"
DEFAULT_HISTORY_MAX_ENTRIES = 50

DISK_USAGE_WARN_PERCENT = 80

