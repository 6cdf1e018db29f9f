"""Discovery utility for Temporal workflows and activities."""

import importlib
import pkgutil

from docflow.utils.logging import get_logger

logger = get_logger(__name__)

SHARED_PACKAGE = "docflow.temporal.shared"


def discover_shared_components(package_name: str = SHARED_PACKAGE) -> int:
    """Import every module under ``<package>.activities`` and ``<package>.workflows``.

    Importing is what registers the decorated activities and workflows.
    Returns the number of modules imported.
    """
    imported = 0
    for sub_pkg in (f"{package_name}.activities", f"{package_name}.workflows"):
        sub_module = importlib.import_module(sub_pkg)
        for _, mod_name, _ in pkgutil.walk_packages(sub_module.__path__, f"{sub_pkg}."):
            importlib.import_module(mod_name)
            imported += 1
            logger.debug(f"Imported shared component module: {mod_name}")
    return imported


def discover_all() -> None:
    """Discover all Temporal components."""
    count = discover_shared_components()
    logger.info(f"Discovered {count} Temporal workflow and activity modules")
