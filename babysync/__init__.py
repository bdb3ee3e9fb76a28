"""babysync: offline-first sync engine for family tracker records."""

__version__ = "0.1.0"
