"""
config.py - Configuration loader for the DICOM editor.

Loads settings from config.yaml with sensible defaults so that no
file path or processing flag is hard-coded inside a module.  The merged
settings are turned into an explicit AppConfig record which the command
line threads through to the operations that need it.
"""

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

import yaml

# Resolve the config file relative to the repo root, not the CWD,
# so imports work regardless of where the tool is launched from.
_REPO_ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
_CONFIG_PATH = os.path.join(_REPO_ROOT, "config.yaml")

_DEFAULTS: dict[str, Any] = {
    "paths": {
        "dicom_script": "dicom-anonymizer.script",
        "lookup_table": "lookup-table.properties",
        "integer_table": None,
        "properties": "dicomeditor.properties",
    },
    "anonymizer": {
        "force_ivrle": False,
    },
    "batch": {
        "recursive": False,
        # "" matches files without an extension, which is common for DICOM.
        "extensions": [".dcm", ""],
    },
    "logging": {
        "level": "INFO",
        "format": "%(levelname)-8s %(message)s",
    },
}


def _deep_merge(base: dict, override: dict) -> dict:
    """Recursively merge *override* into *base*, returning a new dict."""
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def load_config(config_path: str = _CONFIG_PATH) -> dict[str, Any]:
    """
    Load the YAML configuration file and merge it with built-in defaults.

    Parameters
    ----------
    config_path : str
        Path to config.yaml. Defaults to the repo-root config.yaml.

    Returns
    -------
    dict
        Merged configuration dictionary.
    """
    if os.path.exists(config_path):
        with open(config_path, "r") as f:
            user_config = yaml.safe_load(f) or {}
    else:
        user_config = {}

    return _deep_merge(_DEFAULTS, user_config)


@dataclass
class AppConfig:
    """Resolved settings for one invocation of the tool."""
    dicom_script: Path
    lookup_table: Path
    integer_table: Optional[Path]
    properties: Path
    force_ivrle: bool = False
    recursive: bool = False
    extensions: tuple[str, ...] = (".dcm", "")
    log_level: str = "INFO"
    log_format: str = "%(levelname)-8s %(message)s"

    @classmethod
    def from_mapping(cls, config: dict[str, Any], base_dir: str = _REPO_ROOT) -> "AppConfig":
        """
        Build an AppConfig from a merged configuration dictionary.

        Relative paths are resolved against *base_dir* (the directory of
        the configuration file).
        """
        paths = config["paths"]

        def resolve(value: Optional[str]) -> Optional[Path]:
            if value is None:
                return None
            p = Path(value).expanduser()
            return p if p.is_absolute() else Path(base_dir) / p

        return cls(
            dicom_script=resolve(paths["dicom_script"]),
            lookup_table=resolve(paths["lookup_table"]),
            integer_table=resolve(paths.get("integer_table")),
            properties=resolve(paths["properties"]),
            force_ivrle=bool(config["anonymizer"]["force_ivrle"]),
            recursive=bool(config["batch"]["recursive"]),
            extensions=tuple(config["batch"]["extensions"] or ()),
            log_level=str(config["logging"]["level"]).upper(),
            log_format=config["logging"]["format"],
        )


def load_app_config(config_path: str = _CONFIG_PATH) -> AppConfig:
    """Load config.yaml and resolve it against its own directory."""
    base_dir = os.path.dirname(os.path.abspath(config_path))
    return AppConfig.from_mapping(load_config(config_path), base_dir=base_dir)
