"""
Ingestion — turning knowledge sources into embedded, searchable chunks.

Covers sitemap expansion, fetching, chunking, embedding, the
self-continuing batch loop over sitemap children, scheduled refresh and
knowledge search.
"""
