"""
Version information for the Azure Resource Graph exporter.

The package version is read from the installed distribution metadata, with
pyproject.toml as the source for an uninstalled checkout.
"""

import tomllib
from importlib.metadata import PackageNotFoundError, version
from pathlib import Path

DISTRIBUTION = "azure-resourcegraph-exporter"


def _read_version() -> str:
    try:
        return version(DISTRIBUTION)
    except PackageNotFoundError:
        pass
    pyproject_path = Path(__file__).parent.parent / "pyproject.toml"
    try:
        with open(pyproject_path, "rb") as f:
            return str(tomllib.load(f)["project"]["version"])
    except (OSError, KeyError, tomllib.TOMLDecodeError):
        return "0.0.0-dev"


__version__ = _read_version()

USER_AGENT = f"{DISTRIBUTION}/{__version__}"
