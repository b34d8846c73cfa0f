"""Database interface and repository abstractions.

This package holds the data models, the DDL, the connection pool and the
chart stores. ChartStoreProtocol is the stable seam used for dependency
injection throughout the application, supporting the PostgreSQL store in
production and the in-memory store in tests.

Example:
    Use in a service or FastAPI dependency:
        >>> from openenc.db import database
        >>> store = database.get_chart_store(settings)
"""
