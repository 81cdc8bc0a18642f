"""Relational sources for the connector.

A source runs the configured SQL and yields rows as mappings keyed by
result-set label:
    source = DatabaseSource(settings.database)
    for row in source.iter_all_rows():
        ...
"""
