"""almanac: incremental calendar sync and conflict resolution for an offline-first event store."""

__version__ = "0.1.0"
