"""
API Versioning

Routers are created with the versioned prefix (/api/v1). Callback endpoints
registered with the job platform and the billing provider use unversioned
paths so existing webhook registrations keep working across API versions.
"""
import os

from fastapi import APIRouter

API_VERSION = os.getenv("API_VERSION", "v1")


def create_versioned_router(prefix="", version=None, tags=None, unversioned=False, **kwargs):
    """
    Create an APIRouter with automatic versioning.

    Args:
        prefix: Router prefix, appended to /api/{version}
        version: API version (defaults to API_VERSION)
        tags: Router tags
        unversioned: Mount at the bare prefix (external callback URLs)
        **kwargs: Additional APIRouter arguments
    """
    if version is None:
        version = API_VERSION

    if unversioned:
        full_prefix = prefix
    else:
        full_prefix = "/api/{}{}".format(version, prefix) if prefix else "/api/{}".format(version)

    full_prefix = full_prefix.replace("//", "/").rstrip("/")

    return APIRouter(prefix=full_prefix, tags=tags or [], **kwargs)
