"""Delivery Engine - run pipeline phases for a change and submit changes for review."""

from importlib.metadata import PackageNotFoundError, version

from delivery_engine.errors import DeliveryError, ErrorKind
from delivery_engine.schemas import Change, ProjectConfig

__all__ = ["Change", "DeliveryError", "ErrorKind", "ProjectConfig"]

try:
    __version__ = version("delivery-engine")
except PackageNotFoundError:
    __version__ = "0.0.0"
