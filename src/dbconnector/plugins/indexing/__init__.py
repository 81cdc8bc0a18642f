"""Indexing service backends.

- MemoryIndex: thread-safe in-process index (tests, dry runs)
- HttpIndexingService: REST client for a remote index
"""
