"""Infrastructure modules for the ticker engine"""

from .memory_monitor import MemoryMonitor, TracemallocSampler  # noqa: F401
from .metrics import MetricsRecorder  # noqa: F401
from .secure_storage import InMemoryKeyValueStore, JsonFileKeyValueStore, SecureStorageCodec  # noqa: F401

__all__ = [
	"InMemoryKeyValueStore",
	"JsonFileKeyValueStore",
	"MemoryMonitor",
	"MetricsRecorder",
	"SecureStorageCodec",
	"TracemallocSampler",
]
