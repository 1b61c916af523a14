"""
Workflows for the comms sync engine

- comms_sync.py: sync coordinator, run result and CLI

Usage:
    from workflows.comms_sync import CommsSyncCoordinator
    coordinator = CommsSyncCoordinator(crm, integrations, comms)
    result = await coordinator.sync("user-1", Channel.CALENDAR)
"""

# Lazy imports to avoid circular dependencies
__all__ = [
    "CommsSyncCoordinator",
    "SyncConfig",
    "SyncErrorKind",
    "SyncResult",
    "SyncState",
]


def __getattr__(name):
    """Lazy import to avoid circular dependencies."""
    if name in __all__:
        from workflows import comms_sync
        return getattr(comms_sync, name)
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
