"""
Offline mirror for a crates.io-style package registry.

This package is responsible for:
* Reading the registry's line-delimited metadata index.
* Reconciling the parsed records against what is already in the local store.
* Fetching missing or corrupt archives with checksum verification.
* Serving mirrored archives back to package managers.
"""
