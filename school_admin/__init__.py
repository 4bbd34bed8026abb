"""School administration backend: timetabling, student finance and a double-entry ledger."""

__version__ = "1.0.0"
