"""
dbconnector: index relational database rows into a search service.

Runs configured SQL against a database, maps every row into a search-index
document and keeps the index in step through full and incremental traversals.
"""

__version__ = "0.1.0"
