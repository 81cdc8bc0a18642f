"""Collaborators at the edges of the connector.

- sources: the relational database the rows come from
- indexing: the search index the documents go to
- protocols: the contracts both sides implement
"""
