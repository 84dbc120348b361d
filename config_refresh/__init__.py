"""
Config Refresh Coordinator

Keeps an in-process snapshot of remotely stored configuration in sync
with its source by polling a sentinel key.
"""

__version__ = "1.0.0"
