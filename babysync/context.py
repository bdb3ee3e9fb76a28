"""Explicit identity context for a syncing device."""

from dataclasses import dataclass


@dataclass(frozen=True)
class SyncContext:
    """Who is syncing, for which family, from which device.

    Passed into the local stores and the sync client instead of being read
    from process-wide state, so several contexts can coexist in one process.
    """

    user_id: str
    family_id: str
    device_id: str = "default"
