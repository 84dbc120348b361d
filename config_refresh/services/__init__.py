"""
Services

- refresh/ - Snapshot store, refresh policy, remote source and coordinator
"""
