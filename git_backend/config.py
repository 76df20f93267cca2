"""Configuration parsing and validation for git-content-backend.

This module reads and validates the YAML file describing which provider
and repository to use, the publish mode and the content collections.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Optional

import yaml
from typing_extensions import TypedDict

from .models import FileRef

logger = logging.getLogger(__name__)

PUBLISH_MODES = ("simple", "editorial_workflow")
DEFAULT_EXTENSION = "md"


class CollectionFile(TypedDict, total=False):
    """A single file in a files collection."""

    file: str
    label: str


class CollectionConfig(TypedDict, total=False):
    """A content collection.

    Folder collections list every file with the given extension in a
    folder; files collections name their files explicitly.
    """

    name: str
    folder: str
    extension: str
    files: list[CollectionFile]


class BackendSection(TypedDict, total=False):
    """Provider and repository settings."""

    name: str
    repo: str
    branch: str
    api_root: str
    squash_merges: bool
    fork_workflow: bool
    preview_context: str
    commit_author: dict[str, str]


class Config(TypedDict, total=False):
    """Main configuration structure."""

    backend: BackendSection
    publish_mode: str
    media_folder: str
    collections: list[CollectionConfig]


def load_config(config_path: Path) -> Config:
    """Load and validate configuration from a YAML file.

    Args:
        config_path: Path to the YAML configuration file

    Returns:
        Parsed and validated configuration dictionary

    Raises:
        FileNotFoundError: If the config file doesn't exist
        yaml.YAMLError: If the YAML is malformed
        ValueError: If the config structure is invalid

    Example:
        >>> config = load_config(Path("cms/config.yml"))
        >>> print(config["backend"]["repo"])
        owner/site
    """
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    logger.info(f"Loading configuration from {config_path}")

    try:
        with config_path.open("r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise yaml.YAMLError(f"Failed to parse YAML configuration: {e}") from e

    config = validate_config(data)

    logger.info(
        f"Loaded configuration for {config['backend']['name']} backend "
        f"({config['backend']['repo']}) with {len(config['collections'])} collections"
    )
    return config


def validate_config(data: Any) -> Config:
    """Validate a configuration data structure.

    Args:
        data: Raw configuration data

    Returns:
        Validated configuration with defaults filled in

    Raises:
        ValueError: If the configuration structure is invalid
    """
    if not isinstance(data, dict):
        raise ValueError("Configuration must be a dictionary")

    if "backend" not in data:
        raise ValueError("Configuration must contain 'backend' key")

    backend = _validate_backend(data["backend"])

    publish_mode = data.get("publish_mode", "simple")
    if publish_mode not in PUBLISH_MODES:
        raise ValueError(
            f"'publish_mode' must be one of {', '.join(PUBLISH_MODES)}, got '{publish_mode}'"
        )

    media_folder = data.get("media_folder", "")
    if not isinstance(media_folder, str):
        raise ValueError("'media_folder' must be a string")

    collections = data.get("collections", [])
    if not isinstance(collections, list):
        raise ValueError("'collections' must be a list")

    config: Config = {
        "backend": backend,
        "publish_mode": publish_mode,
        "media_folder": media_folder,
        "collections": [
            _validate_collection(i, collection) for i, collection in enumerate(collections)
        ],
    }
    return config


def _validate_backend(backend: Any) -> BackendSection:
    if not isinstance(backend, dict):
        raise ValueError("'backend' must be a dictionary")

    for field in ("name", "repo"):
        if field not in backend:
            raise ValueError(f"Backend missing required field: {field}")
        if not isinstance(backend[field], str):
            raise ValueError(f"Backend: '{field}' must be a string")

    # Validate repo format (should be owner/name)
    if "/" not in backend["repo"]:
        raise ValueError("Backend: 'repo' must be in format 'owner/name'")

    for field in ("branch", "api_root", "preview_context"):
        if field in backend and not isinstance(backend[field], str):
            raise ValueError(f"Backend: '{field}' must be a string")

    for field in ("squash_merges", "fork_workflow"):
        if field in backend and not isinstance(backend[field], bool):
            raise ValueError(f"Backend: '{field}' must be a boolean")

    validated: BackendSection = dict(backend)  # type: ignore[assignment]
    validated.setdefault("branch", "master")
    return validated


def _validate_collection(i: int, collection: Any) -> CollectionConfig:
    if not isinstance(collection, dict):
        raise ValueError(f"Collection {i} must be a dictionary")

    name = collection.get("name")
    if not isinstance(name, str) or not name:
        raise ValueError(f"Collection {i} missing required field: name")

    has_folder = "folder" in collection
    has_files = "files" in collection
    if has_folder == has_files:
        raise ValueError(f"Collection '{name}' must define exactly one of 'folder' or 'files'")

    validated: CollectionConfig = {"name": name}

    if has_folder:
        if not isinstance(collection["folder"], str):
            raise ValueError(f"Collection '{name}': 'folder' must be a string")
        extension = collection.get("extension", DEFAULT_EXTENSION)
        if not isinstance(extension, str):
            raise ValueError(f"Collection '{name}': 'extension' must be a string")
        validated["folder"] = collection["folder"]
        validated["extension"] = extension.lstrip(".")
        return validated

    files = collection["files"]
    if not isinstance(files, list):
        raise ValueError(f"Collection '{name}': 'files' must be a list")

    validated_files: list[CollectionFile] = []
    for j, entry in enumerate(files):
        if not isinstance(entry, dict) or not isinstance(entry.get("file"), str):
            raise ValueError(f"Collection '{name}', file {j}: must have a 'file' string")
        validated_file: CollectionFile = {"file": entry["file"]}
        if "label" in entry:
            validated_file["label"] = str(entry["label"])
        validated_files.append(validated_file)
    validated["files"] = validated_files
    return validated


def get_collection(config: Config, name: str) -> CollectionConfig:
    """Find a collection by name.

    Raises:
        KeyError: If no collection has that name
    """
    for collection in config.get("collections", []):
        if collection["name"] == name:
            return collection
    raise KeyError(f"Unknown collection: {name}")


def collection_file_refs(collection: CollectionConfig) -> list[FileRef]:
    """File references for a files collection."""
    return [
        FileRef(path=entry["file"], label=entry.get("label"))
        for entry in collection.get("files", [])
    ]


def matches_extension(collection: CollectionConfig, filename: Optional[str]) -> bool:
    extension = collection.get("extension", DEFAULT_EXTENSION)
    return bool(filename) and filename.endswith(f".{extension}")
