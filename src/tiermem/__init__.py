"""
tiermem - tiered semantic memory engine

Raw conversational events are filtered by importance, split into chunks,
grouped into episodes and generalized into thoughts. Retrieval searches all
three tiers at once.
"""


def _resolve_version() -> str:
    """
    Resolve the package version.

    Order:
      1. pyproject.toml next to the source tree (editable installs)
      2. importlib.metadata (regular installs)
    """
    from pathlib import Path

    pyproject_path = Path(__file__).parent.parent.parent / "pyproject.toml"
    if pyproject_path.exists():
        try:
            import tomllib

            with open(pyproject_path, "rb") as f:
                return tomllib.load(f)["project"]["version"]
        except (OSError, KeyError, ValueError):
            pass

    try:
        from importlib.metadata import PackageNotFoundError, version

        return version("tiermem")
    except PackageNotFoundError:
        return "0.0.0-dev"


__version__ = _resolve_version()
