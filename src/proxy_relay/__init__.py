"""Local proxy relay forwarding SOCKS5 and HTTP clients through a remote proxy."""

import pathlib
import sys
from importlib.metadata import PackageNotFoundError, version

if sys.version_info >= (3, 11):
    import tomllib
else:
    import tomli as tomllib


def get_version() -> str:
    """Read the installed version, falling back to pyproject.toml in a checkout."""
    try:
        return version("proxy-relay")
    except PackageNotFoundError:
        pass
    current_dir = pathlib.Path(__file__).parent
    for parent in [current_dir] + list(current_dir.parents):
        pyproject_path = parent / "pyproject.toml"
        if pyproject_path.exists():
            with pyproject_path.open("rb") as f:
                pyproject_data = tomllib.load(f)
            return pyproject_data["project"]["version"]

    return "0.0.0"


__version__ = get_version()
