"""
In-memory lookup data for the serving side of the mirror.

This package is responsible for:
* Building the (name, version) -> store path table from a reconciled record set.
* Persisting and reloading record snapshots so the server can skip index parsing.
"""
