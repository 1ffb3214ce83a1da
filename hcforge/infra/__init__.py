"""Internal machinery: SSH transport, storage, cache, debounce, output bus."""

from .bus import OutputBus
from .cache import CachedEntry, ResourceCache
from .debounce import Debouncer
from .protocols import CONTROL_SEQUENCES, ControlSignal, KeyValueStore, RemoteShell, ResourceFetcher
from .ssh import AsyncSSHShell
from .store import JsonFileStore, MemoryStore

__all__ = [
    "OutputBus",
    "CachedEntry",
    "ResourceCache",
    "Debouncer",
    "CONTROL_SEQUENCES",
    "ControlSignal",
    "KeyValueStore",
    "RemoteShell",
    "ResourceFetcher",
    "AsyncSSHShell",
    "JsonFileStore",
    "MemoryStore",
]
