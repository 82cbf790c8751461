"""Health and status resources for the sync process.

Usage
-----
Import resources for route registration::

    from couchsearch.api.health.resources import HealthResource, StatusResource
"""
