"""Chain watchers - per-chain deposit polling loops."""

from deposit_sweeper.watcher.chain_watcher import ChainWatcher, WatcherState, WatcherStats

__all__ = [
    "ChainWatcher",
    "WatcherState",
    "WatcherStats",
]
