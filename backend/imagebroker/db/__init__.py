"""Scene store interfaces, implementations and models.

This package consolidates the scene store protocol, its in-memory and
PostgreSQL/PostGIS implementations, and the connection pool the latter
borrows from. It provides a stable import location for store dependency
injection throughout the application, supporting production and testing
backends.

Example:
    Use in a service or FastAPI dependency:
        >>> from imagebroker.db import database
        >>> pool = database.DatabasePool(settings)
        >>> pool.open()
        >>> store = database.get_scene_store(pool)
"""
