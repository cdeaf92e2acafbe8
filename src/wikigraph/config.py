"""Configuration for wikigraph.

The engine itself takes an ``EngineSettings`` instance; locating a corpus and
reading its settings file is done by hosts such as the CLI.
"""

from __future__ import annotations

import os
from pathlib import Path

import yaml
from pydantic import BaseModel, Field, ValidationError

from .errors import ConfigurationError

__all__ = [
    "CANDIDATE_LIMIT",
    "CONFIG_FILENAME",
    "ConfigurationError",
    "DEFAULT_EXTENSION",
    "EngineSettings",
    "FUZZY_MAX_DISTANCE",
    "INDEX_VERSION",
    "MAX_CONFIG_SEARCH_DEPTH",
    "get_corpus_root",
    "load_settings",
]


# =============================================================================
# Matching
# =============================================================================

# Extension appended to canonical link targets that have none.
# Documents are matched by file name, so this must match the corpus files.
DEFAULT_EXTENSION = ".md"

# Largest edit distance accepted by the fuzzy tier of the resolver.
# 3 catches typical typos ("mnote" -> "my-note") without pairing unrelated
# short names too eagerly.
FUZZY_MAX_DISTANCE = 3

# Number of ranked alternatives returned with each resolution.
CANDIDATE_LIMIT = 5


# =============================================================================
# Index
# =============================================================================

# Version tag written into every index summary.
INDEX_VERSION = "1.0"


# =============================================================================
# Corpus discovery
# =============================================================================

# Optional per-corpus settings file, looked up in the corpus root.
CONFIG_FILENAME = ".wikigraph.yaml"

# Maximum parent directories visited while looking for CONFIG_FILENAME.
MAX_CONFIG_SEARCH_DEPTH = 50


class EngineSettings(BaseModel):
    """Tunables shared by the parser, resolver and index store."""

    extension: str = DEFAULT_EXTENSION
    fuzzy_max_distance: int = Field(default=FUZZY_MAX_DISTANCE, ge=0)
    candidate_limit: int = Field(default=CANDIDATE_LIMIT, ge=0)
    enable_wikilinks: bool = True
    enable_markdown_links: bool = True


def get_corpus_root(start_dir: Path | None = None) -> Path:
    """Locate the corpus root directory.

    Discovery order:
    1. WIKIGRAPH_ROOT environment variable (explicit override)
    2. Nearest directory at or above start_dir containing .wikigraph.yaml

    Raises:
        ConfigurationError: If no corpus root can be determined.
    """
    root = os.environ.get("WIKIGRAPH_ROOT")
    if root:
        path = Path(root).expanduser()
        if not path.is_dir():
            raise ConfigurationError(f"WIKIGRAPH_ROOT is not a directory: {path}")
        return path

    current = Path(start_dir or os.getcwd()).resolve()
    for _ in range(MAX_CONFIG_SEARCH_DEPTH):
        if (current / CONFIG_FILENAME).is_file():
            return current
        parent = current.parent
        if parent == current:  # Reached filesystem root
            break
        current = parent

    raise ConfigurationError(
        "No corpus found. Set WIKIGRAPH_ROOT, pass --root, "
        f"or create {CONFIG_FILENAME} in the notes directory."
    )


def load_settings(corpus_root: Path) -> EngineSettings:
    """Load EngineSettings from the corpus settings file, if present.

    Args:
        corpus_root: Directory that may contain .wikigraph.yaml.

    Returns:
        Validated settings; defaults when the file is absent or empty.

    Raises:
        ConfigurationError: If the file is unreadable or invalid.
    """
    config_file = corpus_root / CONFIG_FILENAME
    if not config_file.exists():
        return EngineSettings()

    try:
        data = yaml.safe_load(config_file.read_text(encoding="utf-8")) or {}
    except (OSError, yaml.YAMLError) as e:
        raise ConfigurationError(f"Cannot read {config_file}: {e}") from e

    if not isinstance(data, dict):
        raise ConfigurationError(f"{config_file} must contain a mapping")

    try:
        return EngineSettings.model_validate(data)
    except ValidationError as e:
        errors = []
        for error in e.errors():
            loc = ".".join(str(x) for x in error["loc"])
            errors.append(f"  - {loc}: {error['msg']}")
        raise ConfigurationError(f"Invalid settings in {config_file}:\n" + "\n".join(errors)) from e
