"""File upload module.

Files are uploaded over HTTP (POST /api/upload), stored on local disk with
their metadata tracked in DuckDB, and shared in chat by URL.

Accepted extensions and the size limit (10MB by default) come from the
``uploads`` section of the settings file.
"""
