"""Manifest loading with validation.

SECURITY: All file operations enforce size limits to prevent DoS attacks
via large files. Input validation is performed at the boundary.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from .config import MAX_MANIFEST_FILE_SIZE_BYTES
from .models import ManagedObject, get_object_class

logger = logging.getLogger(__name__)


class ManifestLoadError(Exception):
    """Raised when manifest loading or validation fails."""

    pass


def parse_manifest(content: str, source: str = "<string>") -> ManagedObject:
    """Parse and validate a manifest document.

    Args:
        content: YAML text with apiVersion, kind, metadata and spec.
        source: Name used in error messages.

    Returns:
        Validated object of the class registered for its kind.

    Raises:
        ManifestLoadError: If the document is malformed or fails validation.
    """
    if len(content.encode("utf-8")) > MAX_MANIFEST_FILE_SIZE_BYTES:
        raise ManifestLoadError(
            f"Manifest exceeds maximum size of {MAX_MANIFEST_FILE_SIZE_BYTES} bytes: {source}"
        )

    try:
        raw_data = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise ManifestLoadError(f"Invalid YAML in {source}: {e}") from e

    return build_object(raw_data, source)


def build_object(raw_data: Any, source: str = "<data>") -> ManagedObject:
    """Validate already-parsed manifest data.

    Raises:
        ManifestLoadError: If the data is malformed or fails validation.
    """
    if not isinstance(raw_data, dict):
        raise ManifestLoadError(f"Manifest must contain a YAML mapping: {source}")

    kind = raw_data.get("kind")
    if not isinstance(kind, str) or not kind:
        raise ManifestLoadError(f"Manifest has no kind: {source}")

    try:
        object_class = get_object_class(kind)
    except ValueError as e:
        raise ManifestLoadError(str(e)) from e

    try:
        return object_class.model_validate(raw_data)
    except ValidationError as e:
        # Format Pydantic validation errors for readability
        errors = []
        for error in e.errors():
            loc = ".".join(str(x) for x in error["loc"])
            msg = error["msg"]
            errors.append(f"  - {loc}: {msg}")

        error_list = "\n".join(errors)
        raise ManifestLoadError(f"Validation failed for {source}:\n{error_list}") from e


def load_manifest(path: Path) -> ManagedObject:
    """Load and validate a manifest file.

    Raises:
        ManifestLoadError: If the file cannot be read or fails validation.
    """
    if not path.exists():
        raise ManifestLoadError(f"Manifest file not found: {path}")

    # SECURITY: Check file size before reading to prevent DoS
    try:
        file_size = path.stat().st_size
    except OSError as e:
        raise ManifestLoadError(f"Failed to stat manifest file {path}: {e}") from e

    if file_size > MAX_MANIFEST_FILE_SIZE_BYTES:
        raise ManifestLoadError(
            f"Manifest exceeds maximum size of {MAX_MANIFEST_FILE_SIZE_BYTES} bytes: {path}"
        )

    try:
        content = path.read_text(encoding="utf-8")
    except OSError as e:
        raise ManifestLoadError(f"Failed to read manifest file {path}: {e}") from e

    obj = parse_manifest(content, str(path))
    logger.debug("Loaded manifest", extra={"kind": obj.kind, "key": str(obj.key), "path": str(path)})
    return obj


def dump_manifest(obj: ManagedObject) -> str:
    """Serialize an object to manifest YAML."""
    return yaml.safe_dump(obj.to_manifest(), sort_keys=False, default_flow_style=False)
