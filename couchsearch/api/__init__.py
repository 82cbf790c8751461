"""couchsearch HTTP status surface.

This package provides the Falcon Asynchronous Server Gateway Interface
(ASGI) application that exposes liveness, readiness and sync progress.

Usage
-----
Create the application::

    from couchsearch.api import create_app
    from couchsearch.api.app import AppDependencies

    app = create_app()  # health probes only

    # probes, /status and pipeline lifespan
    app = create_app(AppDependencies(pipeline=pipeline))

"""

from couchsearch.api.app import create_app

__all__ = ["create_app"]
