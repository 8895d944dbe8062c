"""Desired-state manifest loading.

The operator reconciles already-rendered objects: one StatefulSet per host,
plus the ConfigMaps and Services the hosts depend on. Rendering them from an
installation spec happens upstream; this module only reads and validates
the result.

SECURITY: File sizes are checked before reading.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml
from kubernetes_asyncio import client
from kubernetes_asyncio.client import V1ConfigMap, V1Service, V1StatefulSet

from .config import MAX_MANIFEST_FILE_SIZE_BYTES

logger = logging.getLogger(__name__)

MANIFEST_SUFFIXES = (".yaml", ".yml")

# kind -> (apiVersion, model class name)
SUPPORTED_KINDS: dict[str, tuple[str, str]] = {
    "StatefulSet": ("apps/v1", "V1StatefulSet"),
    "Service": ("v1", "V1Service"),
    "ConfigMap": ("v1", "V1ConfigMap"),
}


class ManifestLoadError(Exception):
    """Raised when a manifest cannot be loaded or is invalid."""

    pass


@dataclass
class DesiredState:
    """Objects to reconcile in one pass, grouped by kind."""

    config_maps: list[V1ConfigMap] = field(default_factory=list)
    services: list[V1Service] = field(default_factory=list)
    statefulsets: list[V1StatefulSet] = field(default_factory=list)

    @property
    def hosts_count(self) -> int:
        return len(self.statefulsets)


class _JsonResponse:
    """Adapter letting ApiClient.deserialize() read an in-memory document."""

    def __init__(self, document: dict[str, Any]) -> None:
        self.data = json.dumps(document)


async def load_manifests(
    manifests_dir: Path,
    namespace: str,
    api_client: Any = None,
) -> DesiredState:
    """Load every manifest document in a directory.

    Args:
        manifests_dir: Directory of YAML files, multi-document allowed.
        namespace: Namespace for objects that do not set one.
        api_client: ApiClient used for deserialization; a temporary one is
            created when omitted.

    Returns:
        Desired objects with StatefulSets ordered by name.

    Raises:
        ManifestLoadError: If any file or document is invalid.
    """
    if not manifests_dir.is_dir():
        raise ManifestLoadError(f"Manifests directory not found: {manifests_dir}")

    documents: list[tuple[Path, dict[str, Any]]] = []
    for path in sorted(manifests_dir.iterdir()):
        if path.suffix in MANIFEST_SUFFIXES and path.is_file():
            documents.extend((path, doc) for doc in _read_documents(path))

    if api_client is None:
        async with client.ApiClient() as temporary_client:
            state = _build_state(documents, namespace, temporary_client)
    else:
        state = _build_state(documents, namespace, api_client)

    state.statefulsets.sort(key=lambda sts: sts.metadata.name)
    logger.info(
        "Loaded manifests",
        extra={
            "manifests_dir": str(manifests_dir),
            "statefulsets": len(state.statefulsets),
            "services": len(state.services),
            "config_maps": len(state.config_maps),
        },
    )
    return state


def _read_documents(path: Path) -> list[dict[str, Any]]:
    try:
        file_size = path.stat().st_size
    except OSError as e:
        raise ManifestLoadError(f"Failed to stat manifest file {path}: {e}") from e

    if file_size > MAX_MANIFEST_FILE_SIZE_BYTES:
        raise ManifestLoadError(
            f"Manifest file exceeds maximum size of {MAX_MANIFEST_FILE_SIZE_BYTES} bytes: {path}"
        )

    try:
        content = path.read_text(encoding="utf-8")
    except OSError as e:
        raise ManifestLoadError(f"Failed to read manifest file {path}: {e}") from e

    try:
        raw_documents = list(yaml.safe_load_all(content))
    except yaml.YAMLError as e:
        raise ManifestLoadError(f"Invalid YAML in {path}: {e}") from e

    documents = []
    for doc in raw_documents:
        if doc is None:
            continue
        if not isinstance(doc, dict):
            raise ManifestLoadError(f"Manifest documents must be YAML mappings: {path}")
        documents.append(doc)
    return documents


def _build_state(
    documents: list[tuple[Path, dict[str, Any]]],
    namespace: str,
    api_client: Any,
) -> DesiredState:
    state = DesiredState()
    seen: set[tuple[str, str]] = set()

    for path, doc in documents:
        kind = doc.get("kind")
        if kind not in SUPPORTED_KINDS:
            raise ManifestLoadError(
                f"Unsupported kind {kind!r} in {path}. Supported: {sorted(SUPPORTED_KINDS)}"
            )

        metadata = doc.get("metadata")
        if not isinstance(metadata, dict) or not metadata.get("name"):
            raise ManifestLoadError(f"{kind} in {path} has no metadata.name")
        metadata.setdefault("namespace", namespace)

        key = (kind, metadata["name"])
        if key in seen:
            raise ManifestLoadError(f"Duplicate {kind} {metadata['name']!r} in {path}")
        seen.add(key)

        api_version, model_name = SUPPORTED_KINDS[kind]
        doc.setdefault("apiVersion", api_version)
        try:
            obj = api_client.deserialize(_JsonResponse(doc), model_name)
        except ValueError as e:
            raise ManifestLoadError(f"Invalid {kind} {metadata['name']!r} in {path}: {e}") from e

        match kind:
            case "StatefulSet":
                state.statefulsets.append(obj)
            case "Service":
                state.services.append(obj)
            case "ConfigMap":
                state.config_maps.append(obj)

    return state
