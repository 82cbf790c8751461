"""Turn raw registry documents into :class:`Entity` records.

Registry documents hold every published version of a package. The index only
cares about the ``latest`` dist-tag, so the manifest for that version is
flattened into a single record with a handful of passthrough attributes.
"""

from __future__ import annotations

import typing as typ

from .models import Entity

_PASSTHROUGH_STRINGS = ("description", "homepage", "license", "readmeFilename")


def _person_name(value: object) -> str | None:
    if isinstance(value, str):
        return value.strip() or None
    if isinstance(value, dict):
        name = value.get("name")
        if isinstance(name, str) and name.strip():
            return name.strip()
    return None


def _keywords(value: object) -> list[str]:
    if isinstance(value, str):
        return [part.strip() for part in value.split(",") if part.strip()]
    if isinstance(value, list):
        return [item for item in value if isinstance(item, str) and item]
    return []


def _dependency_names(value: object) -> list[str] | None:
    if isinstance(value, dict):
        return sorted(key for key in value if isinstance(key, str))
    if isinstance(value, list):
        return [item for item in value if isinstance(item, str)]
    return None


def _repository_url(value: object) -> str | None:
    if isinstance(value, str):
        return value or None
    if isinstance(value, dict):
        url = value.get("url")
        if isinstance(url, str) and url:
            return url
    return None


def _latest_manifest(document: dict[str, typ.Any]) -> tuple[str | None, dict[str, typ.Any]]:
    """Return the latest version string and its manifest, if any."""
    dist_tags = document.get("dist-tags")
    versions = document.get("versions")
    latest = dist_tags.get("latest") if isinstance(dist_tags, dict) else None
    manifest: dict[str, typ.Any] = {}
    if isinstance(versions, dict) and isinstance(latest, str):
        candidate = versions.get(latest)
        if isinstance(candidate, dict):
            manifest = candidate
    if not isinstance(latest, str):
        fallback = manifest.get("version") or document.get("version")
        latest = fallback if isinstance(fallback, str) else None
    return latest, manifest


def _collect_passthrough(
    document: dict[str, typ.Any], manifest: dict[str, typ.Any]
) -> dict[str, typ.Any]:
    extra: dict[str, typ.Any] = {}

    def pick(key: str) -> object:
        return manifest.get(key, document.get(key))

    for key in _PASSTHROUGH_STRINGS:
        value = pick(key)
        if isinstance(value, str) and value:
            extra[key] = value

    keywords = _keywords(pick("keywords"))
    if keywords:
        extra["keywords"] = keywords

    author = _person_name(pick("author"))
    if author:
        extra["author"] = author

    maintainers = pick("maintainers")
    if isinstance(maintainers, list):
        names = [name for name in map(_person_name, maintainers) if name]
        if names:
            extra["maintainers"] = names

    repository = _repository_url(pick("repository"))
    if repository:
        extra["repository"] = repository

    times = document.get("time")
    if isinstance(times, dict):
        for key in ("created", "modified"):
            stamp = times.get(key)
            if isinstance(stamp, str):
                extra[key] = stamp

    return extra


def normalize_document(document: dict[str, typ.Any] | None) -> Entity | None:
    """Return the normalized entity, or ``None`` when no identity is present.

    Incomplete documents (design docs, half-written revisions) carry no
    ``name`` and must never reach the index.
    """
    if not isinstance(document, dict):
        return None

    name = document.get("name")
    if not isinstance(name, str) or not name.strip():
        return None

    version, manifest = _latest_manifest(document)
    extra = _collect_passthrough(document, manifest)

    dependencies = _dependency_names(manifest.get("dependencies"))
    dev_dependencies = _dependency_names(manifest.get("devDependencies"))
    if dependencies is not None:
        extra["dependencies"] = dependencies
    if dev_dependencies is not None:
        extra["devDependencies"] = dev_dependencies

    return Entity(
        name=name.strip(),
        version=version or "",
        dependency_count=None if dependencies is None else len(dependencies),
        dev_dependency_count=None if dev_dependencies is None else len(dev_dependencies),
        extra_fields=extra,
    )


def count_stars(document: dict[str, typ.Any] | None) -> int:
    """Return the size of the document's ``users`` collection, 0 if absent."""
    if not isinstance(document, dict):
        return 0
    users = document.get("users")
    if isinstance(users, dict | list):
        return len(users)
    return 0
